from __future__ import annotations

import json
import logging
import math
import socket
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union


LOGGER = logging.getLogger("fastd_prom_exporter.status")

DEFAULT_STATUS_TIMEOUT_SECONDS = 2.0
_RECV_CHUNK_BYTES = 65536
STATISTICS_FIELDS: tuple[str, ...] = ("rx", "rx_reordered", "tx", "tx_dropped", "tx_error")


class StatusError(Exception):
    pass


class TransportError(StatusError):
    pass


class DecodeError(StatusError):
    pass


@dataclass(frozen=True)
class PacketStatistics:
    packets: int = 0
    bytes: int = 0


@dataclass(frozen=True)
class Statistics:
    rx: PacketStatistics = PacketStatistics()
    rx_reordered: PacketStatistics = PacketStatistics()
    tx: PacketStatistics = PacketStatistics()
    tx_dropped: PacketStatistics = PacketStatistics()
    tx_error: PacketStatistics = PacketStatistics()


@dataclass(frozen=True)
class Connection:
    established_seconds: float
    method: str
    statistics: Statistics


@dataclass(frozen=True)
class Disconnected:
    pass


@dataclass(frozen=True)
class Connected:
    connection: Connection


PeerState = Union[Connected, Disconnected]
DISCONNECTED = Disconnected()


@dataclass(frozen=True)
class Peer:
    public_key: str
    name: str = ""
    address: str = ""
    interface: str = ""
    mac_addresses: tuple[str, ...] = ()
    state: PeerState = DISCONNECTED

    @property
    def is_up(self) -> bool:
        return isinstance(self.state, Connected)


@dataclass(frozen=True)
class Snapshot:
    uptime_seconds: float
    interface: str = ""
    statistics: Statistics = Statistics()
    peers: dict[str, Peer] = field(default_factory=dict)

    @property
    def peers_up_total(self) -> int:
        return sum(1 for peer in self.peers.values() if peer.is_up)


def _as_number(value: Any, context: str) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError(f"{context} is not numeric: {value!r}")
    try:
        number = float(value)
    except OverflowError as error:
        raise DecodeError(f"{context} is out of range: {value!r}") from error
    if not math.isfinite(number):
        raise DecodeError(f"{context} is not finite: {value!r}")
    return number


def _as_object(value: Any, context: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DecodeError(f"{context} is not an object: {value!r}")
    return value


def _as_string(value: Any, context: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise DecodeError(f"{context} is not a string: {value!r}")
    return value


def _parse_packet_statistics(payload: Any, context: str) -> PacketStatistics:
    block = _as_object(payload, context)
    return PacketStatistics(
        packets=int(_as_number(block.get("packets"), f"{context}.packets")),
        bytes=int(_as_number(block.get("bytes"), f"{context}.bytes")),
    )


def parse_statistics(payload: Any, context: str = "statistics") -> Statistics:
    block = _as_object(payload, context)
    return Statistics(
        **{name: _parse_packet_statistics(block.get(name), f"{context}.{name}") for name in STATISTICS_FIELDS}
    )


def _parse_peer_state(payload: Any, context: str) -> PeerState:
    if payload is None:
        return DISCONNECTED
    block = _as_object(payload, context)
    return Connected(
        Connection(
            established_seconds=_as_number(block.get("established"), f"{context}.established") / 1000,
            method=_as_string(block.get("method"), f"{context}.method"),
            statistics=parse_statistics(block.get("statistics"), f"{context}.statistics"),
        )
    )


def parse_peer(public_key: str, payload: Any) -> Peer:
    context = f"peers.{public_key}"
    block = _as_object(payload, context)
    macs = block.get("mac_addresses") or []
    if not isinstance(macs, list):
        raise DecodeError(f"{context}.mac_addresses is not a list: {macs!r}")
    return Peer(
        public_key=public_key,
        name=_as_string(block.get("name"), f"{context}.name"),
        address=_as_string(block.get("address"), f"{context}.address"),
        interface=_as_string(block.get("interface"), f"{context}.interface"),
        mac_addresses=tuple(str(mac) for mac in macs),
        state=_parse_peer_state(block.get("connection"), f"{context}.connection"),
    )


def parse_snapshot(payload: Any) -> Snapshot:
    """Convert a decoded fastd status document into a Snapshot.

    Missing fields default to zero/empty like fastd's own omissions; fields of
    the wrong JSON type raise DecodeError.
    """
    if not isinstance(payload, dict):
        raise DecodeError(f"status document is not an object: {type(payload).__name__}")
    document = payload
    peers = _as_object(document.get("peers"), "peers")
    return Snapshot(
        uptime_seconds=_as_number(document.get("uptime"), "uptime") / 1000,
        interface=_as_string(document.get("interface"), "interface"),
        statistics=parse_statistics(document.get("statistics")),
        peers={str(key): parse_peer(str(key), value) for key, value in peers.items()},
    )


def _reject_constant(name: str) -> Any:
    raise DecodeError(f"status document contains non-finite number {name}")


def decode_status_document(raw: bytes) -> Any:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as error:
        raise DecodeError(f"status document is not valid utf-8: {error}") from error
    stripped = text.lstrip()
    if not stripped:
        raise DecodeError("status socket returned no data")
    try:
        # Only the first document counts; fastd closes the socket after writing it.
        document, _ = json.JSONDecoder(parse_constant=_reject_constant).raw_decode(stripped)
    except (ValueError, RecursionError) as error:
        raise DecodeError(f"malformed status document: {error}") from error
    return document


def _receive_all(conn: socket.socket, deadline: float) -> bytes:
    chunks: list[bytes] = []
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("timed out reading status socket")
        conn.settimeout(remaining)
        chunk = conn.recv(_RECV_CHUNK_BYTES)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


def read_status_socket(
    path: str | Path,
    timeout_seconds: float = DEFAULT_STATUS_TIMEOUT_SECONDS,
) -> Snapshot:
    """Fetch one status snapshot from a fastd status socket.

    The whole connect-and-read is bounded by ``timeout_seconds``. The socket is
    closed on every exit path.
    """
    if timeout_seconds <= 0:
        raise TransportError(f"no time left to read {path}")
    deadline = time.monotonic() + timeout_seconds
    try:
        conn = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    except OSError as error:
        raise TransportError(f"cannot create unix socket: {error}") from error

    with conn:
        try:
            conn.settimeout(timeout_seconds)
            conn.connect(str(path))
            raw = _receive_all(conn, deadline)
        except OSError as error:
            raise TransportError(f"reading {path} failed: {error}") from error

    LOGGER.debug("read %d bytes from %s", len(raw), path)
    return parse_snapshot(decode_status_document(raw))
