from __future__ import annotations

import ipaddress
import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Iterable

import requests


LOGGER = logging.getLogger("fastd_prom_exporter.asn")

DEFAULT_ASN_LOOKUP_URL = "https://stat.ripe.net/data/network-info/data.json?resource={ip}"
DEFAULT_ASN_LOOKUP_TIMEOUT_SECONDS = 1.0
IPV4 = 4
IPV6 = 6


class EnrichmentFailure(Exception):
    pass


def split_host(address: str) -> str:
    """Strip the port from a fastd peer address ("1.2.3.4:10000", "[2001:db8::1]:10000")."""
    address = address.strip()
    if address.startswith("["):
        host, _, _ = address[1:].partition("]")
        return host
    if address.count(":") == 1:
        host, _, _ = address.partition(":")
        return host
    return address


def address_family(address: str) -> int:
    # Anything without a dotted quad, including garbage, counts as IPv6.
    return IPV4 if "." in split_host(address) else IPV6


def parse_ip(address: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    host = split_host(address)
    if not host:
        return None
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def _extract_asn(payload: Any) -> int:
    data = payload.get("data") if isinstance(payload, dict) else None
    asns = data.get("asns") if isinstance(data, dict) else None
    if not isinstance(asns, list) or not asns:
        raise EnrichmentFailure(f"lookup response carries no ASN: {payload!r}")
    first = str(asns[0]).strip().upper()
    if first.startswith("AS"):
        first = first[2:]
    try:
        return int(first)
    except ValueError as error:
        raise EnrichmentFailure(f"lookup response carries malformed ASN {asns[0]!r}") from error


def build_lookup_url(url_template: str, ip: ipaddress.IPv4Address | ipaddress.IPv6Address | str) -> str:
    try:
        return url_template.format(ip=ip)
    except (KeyError, IndexError, ValueError, AttributeError) as error:
        raise EnrichmentFailure(f"invalid asn lookup url template {url_template!r}: {error!r}") from error


def validate_url_template(url_template: str) -> None:
    try:
        build_lookup_url(url_template, "192.0.2.1")
    except EnrichmentFailure as error:
        raise ValueError(str(error)) from error
    if "{ip}" not in url_template:
        raise ValueError(f"asn lookup url template {url_template!r} has no {{ip}} placeholder")


class AsnResolver:
    """Best-effort ASN lookup over an HTTP network-info service.

    ``resolve_many`` never raises and never waits longer than the configured
    timeout; addresses that could not be resolved in time map to 0.
    """

    def __init__(
        self,
        url_template: str = DEFAULT_ASN_LOOKUP_URL,
        timeout_seconds: float = DEFAULT_ASN_LOOKUP_TIMEOUT_SECONDS,
        *,
        session: requests.Session | None = None,
        max_workers: int = 8,
    ) -> None:
        self.url_template = url_template
        self.timeout_seconds = timeout_seconds
        self._session = session if session is not None else requests.Session()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="asn-lookup")

    def lookup(self, ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> int:
        url = build_lookup_url(self.url_template, ip)
        try:
            response = self._session.get(url, timeout=self.timeout_seconds)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as error:
            raise EnrichmentFailure(f"asn lookup for {ip} failed: {error}") from error
        return _extract_asn(payload)

    def _safe_lookup(self, ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> int:
        try:
            return self.lookup(ip)
        except EnrichmentFailure as error:
            LOGGER.warning("%s", error)
            return 0

    def resolve_many(self, addresses: Iterable[str], timeout_seconds: float | None = None) -> dict[str, int]:
        budget = self.timeout_seconds
        if timeout_seconds is not None:
            budget = max(0.0, min(timeout_seconds, budget))
        results: dict[str, int] = {}
        pending: dict[str, Future[int]] = {}
        for address in addresses:
            if address in results or address in pending:
                continue
            ip = parse_ip(address)
            if ip is None:
                LOGGER.debug("skipping asn lookup for unparseable address %r", address)
                results[address] = 0
                continue
            if not ip.is_global:
                results[address] = 0
                continue
            pending[address] = self._executor.submit(self._safe_lookup, ip)

        if pending:
            wait(pending.values(), timeout=budget)
        for address, future in pending.items():
            if future.done():
                results[address] = future.result()
            else:
                future.cancel()
                LOGGER.warning("asn lookup for %s abandoned after %.3fs", address, budget)
                results[address] = 0
        return results

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._session.close()
