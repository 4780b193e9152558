import json
import socket
import threading
from collections.abc import Iterator
from pathlib import Path

import pytest


class StatusSocketServer:
    """Serves a fixed payload to every connection on a unix socket, like fastd."""

    def __init__(self, path: Path, payload: bytes) -> None:
        self.path = path
        self.payload = payload
        self.connections = 0
        self._sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._sock.bind(str(path))
        self._sock.listen(8)
        self._sock.settimeout(0.1)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            self.connections += 1
            with conn:
                if self.payload:
                    conn.sendall(self.payload)

    def close(self) -> None:
        self._stop.set()
        self._thread.join(timeout=2)
        self._sock.close()


@pytest.fixture
def status_socket(tmp_path: Path) -> Iterator:
    servers: list[StatusSocketServer] = []

    def start(payload: dict | bytes, name: str = "fastd.sock") -> StatusSocketServer:
        raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        server = StatusSocketServer(tmp_path / name, raw)
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.close()


def stats_block(base: int = 0) -> dict:
    return {
        "rx": {"packets": base + 10, "bytes": base + 100},
        "rx_reordered": {"packets": base + 1, "bytes": base + 11},
        "tx": {"packets": base + 20, "bytes": base + 200},
        "tx_dropped": {"packets": base + 2, "bytes": base + 22},
        "tx_error": {"packets": base + 3, "bytes": base + 33},
    }


def status_payload() -> dict:
    return {
        "uptime": 60000,
        "interface": "ffda0",
        "statistics": stats_block(),
        "peers": {
            "aa11": {
                "name": "gw-north",
                "address": "192.0.2.10:10000",
                "interface": "",
                "mac_addresses": ["02:00:00:00:00:01"],
                "connection": {
                    "established": 12500,
                    "method": "salsa2012+umac",
                    "statistics": stats_block(1000),
                },
            },
            "bb22": {
                "name": "node-south",
                "address": "[2001:db8::5]:10000",
                "interface": "",
                "mac_addresses": [],
                "connection": None,
            },
        },
    }
