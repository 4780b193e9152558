import json
import socket
import threading
import time
from pathlib import Path

import pytest

from conftest import status_payload
from fastd_prom_exporter.status import (
    Connected,
    DecodeError,
    Disconnected,
    PacketStatistics,
    TransportError,
    decode_status_document,
    parse_snapshot,
    read_status_socket,
)


def test_parse_snapshot_converts_units_and_peer_states() -> None:
    snapshot = parse_snapshot(status_payload())

    assert snapshot.uptime_seconds == 60.0
    assert snapshot.interface == "ffda0"
    assert snapshot.statistics.rx == PacketStatistics(packets=10, bytes=100)
    assert snapshot.statistics.tx_error == PacketStatistics(packets=3, bytes=33)
    assert snapshot.peers_up_total == 1

    north = snapshot.peers["aa11"]
    assert north.is_up
    assert isinstance(north.state, Connected)
    assert north.state.connection.established_seconds == 12.5
    assert north.state.connection.method == "salsa2012+umac"
    assert north.state.connection.statistics.rx == PacketStatistics(packets=1010, bytes=1100)
    assert north.mac_addresses == ("02:00:00:00:00:01",)

    south = snapshot.peers["bb22"]
    assert not south.is_up
    assert isinstance(south.state, Disconnected)


def test_parse_snapshot_defaults_missing_fields() -> None:
    snapshot = parse_snapshot({"uptime": 1500})
    assert snapshot.uptime_seconds == 1.5
    assert snapshot.interface == ""
    assert snapshot.statistics.rx_reordered == PacketStatistics()
    assert snapshot.peers == {}
    assert snapshot.peers_up_total == 0


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"uptime": "soon"},
        {"uptime": 1, "peers": []},
        {"uptime": 1, "statistics": {"rx": {"packets": "many"}}},
        {"uptime": 1, "peers": {"k": {"connection": "yes"}}},
    ],
)
def test_parse_snapshot_rejects_wrong_shapes(payload) -> None:
    with pytest.raises(DecodeError):
        parse_snapshot(payload)


def test_decode_status_document_takes_first_document() -> None:
    assert decode_status_document(b'  {"uptime": 5}\n{"uptime": 6}') == {"uptime": 5}


def test_decode_status_document_rejects_empty_and_malformed() -> None:
    with pytest.raises(DecodeError, match="no data"):
        decode_status_document(b"")
    with pytest.raises(DecodeError, match="malformed"):
        decode_status_document(b'{"uptime": ')


def test_read_status_socket_returns_snapshot(status_socket) -> None:
    server = status_socket(status_payload())
    snapshot = read_status_socket(server.path)
    assert snapshot.uptime_seconds == 60.0
    assert set(snapshot.peers) == {"aa11", "bb22"}
    assert server.connections == 1


def test_read_status_socket_reports_missing_socket(tmp_path: Path) -> None:
    with pytest.raises(TransportError):
        read_status_socket(tmp_path / "absent.sock")


def test_read_status_socket_reports_malformed_json(status_socket) -> None:
    server = status_socket(b'{"uptime": 60000, "peers": {')
    with pytest.raises(DecodeError):
        read_status_socket(server.path)


def test_read_status_socket_times_out_on_silent_peer(tmp_path: Path) -> None:
    path = tmp_path / "silent.sock"
    listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    listener.bind(str(path))
    listener.listen(1)
    accepted: list[socket.socket] = []

    def accept() -> None:
        conn, _ = listener.accept()
        accepted.append(conn)

    thread = threading.Thread(target=accept, daemon=True)
    thread.start()
    try:
        started = time.monotonic()
        with pytest.raises(TransportError):
            read_status_socket(path, timeout_seconds=0.2)
        assert time.monotonic() - started < 2.0
    finally:
        thread.join(timeout=1)
        for conn in accepted:
            conn.close()
        listener.close()


def test_read_status_socket_handles_large_payload(status_socket) -> None:
    payload = status_payload()
    for index in range(500):
        payload["peers"][f"key{index:04d}"] = {
            "name": f"node-{index}",
            "address": "",
            "interface": "",
            "mac_addresses": [],
            "connection": None,
        }
    server = status_socket(json.dumps(payload).encode("utf-8"))
    snapshot = read_status_socket(server.path)
    assert len(snapshot.peers) == 502


@pytest.mark.parametrize(
    "raw",
    [
        b'{"uptime": 1, "statistics": {"rx": {"packets": 1e400}}}',
        b'{"uptime": NaN}',
        b'{"uptime": 1, "peers": {"k": {"connection": {"established": -Infinity}}}}',
        b'{"uptime": 1e999}',
    ],
)
def test_non_finite_numbers_are_decode_errors(raw: bytes) -> None:
    with pytest.raises(DecodeError):
        parse_snapshot(decode_status_document(raw))


def test_read_status_socket_rejects_overflowing_counter(status_socket) -> None:
    server = status_socket(b'{"uptime": 60000, "statistics": {"rx": {"packets": 1e400, "bytes": 1}}}')
    with pytest.raises(DecodeError, match="not finite"):
        read_status_socket(server.path)


def test_read_status_socket_without_time_left(status_socket) -> None:
    server = status_socket(status_payload())
    with pytest.raises(TransportError, match="no time left"):
        read_status_socket(server.path, timeout_seconds=0)
