from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from fastd_prom_exporter.asn import AsnResolver, address_family
from fastd_prom_exporter.config import InstanceConfig
from fastd_prom_exporter.status import (
    DEFAULT_STATUS_TIMEOUT_SECONDS,
    STATISTICS_FIELDS,
    Connected,
    Disconnected,
    Peer,
    Snapshot,
    Statistics,
    StatusError,
    read_status_socket,
)


LOGGER = logging.getLogger("fastd_prom_exporter.exporter")

METRIC_PREFIX = "fastd"
INSTANCE_LABEL = "fastd_instance"
PEER_LABELS: tuple[str, ...] = ("public_key", "name", "interface", "method")
GAUGE = "gauge"
COUNTER = "counter"

_SCRAPE_TIMEOUT: ContextVar[float | None] = ContextVar("fastd_scrape_timeout", default=None)


@contextmanager
def scrape_timeout(timeout_seconds: float | None) -> Iterator[None]:
    """Cap the cycles collected inside this block to ``timeout_seconds``."""
    token = _SCRAPE_TIMEOUT.set(timeout_seconds)
    try:
        yield
    finally:
        _SCRAPE_TIMEOUT.reset(token)


@dataclass(frozen=True)
class MetricSpec:
    name: str
    documentation: str
    kind: str
    label_names: tuple[str, ...]


@dataclass(frozen=True)
class Sample:
    name: str
    label_names: tuple[str, ...]
    label_values: tuple[str, ...]
    value: float
    kind: str

    @property
    def labels(self) -> dict[str, str]:
        return dict(zip(self.label_names, self.label_values))


def _statistics_specs(prefix: str, scope: str, label_names: tuple[str, ...]) -> dict[str, MetricSpec]:
    specs: dict[str, MetricSpec] = {}
    for field_name in STATISTICS_FIELDS:
        readable = field_name.replace("_", " ")
        for unit in ("packets", "bytes"):
            key = f"{scope}{field_name}_{unit}"
            specs[key] = MetricSpec(
                name=f"{prefix}_{key}",
                documentation=f"{scope.replace('_', ' ')}{readable} {unit} count".strip(),
                kind=COUNTER,
                label_names=label_names,
            )
    return specs


@dataclass(frozen=True)
class MetricCatalogue:
    """Immutable per-instance set of metric descriptors and static labels."""

    instance: str
    specs: Mapping[str, MetricSpec]
    fallback_interface: str = ""

    @classmethod
    def for_instance(cls, instance: str, *, fallback_interface: str | None = None) -> MetricCatalogue:
        static = (INSTANCE_LABEL,)
        dynamic = static + PEER_LABELS

        def gauge(key: str, documentation: str, label_names: tuple[str, ...]) -> tuple[str, MetricSpec]:
            return key, MetricSpec(f"{METRIC_PREFIX}_{key}", documentation, GAUGE, label_names)

        specs = dict(
            [
                gauge("up", "whether the fastd process is up", static),
                gauge("uptime_seconds", "uptime of the fastd process", static),
                gauge("peers_up_total", "number of connected peers", static),
                gauge("peer_up", "whether the peer is connected", dynamic),
                gauge("peer_uptime_seconds", "peer session uptime", dynamic),
                gauge("peer_ipaddr_family", "IP address family the peer is using to connect", dynamic),
                gauge("peer_asn", "ASN the peer is connecting from", dynamic),
            ]
        )
        specs.update(_statistics_specs(METRIC_PREFIX, "", static))
        specs.update(_statistics_specs(METRIC_PREFIX, "peer_", dynamic))
        return cls(instance=instance, specs=specs, fallback_interface=fallback_interface or "")

    def sample(self, key: str, value: float, *peer_labels: str) -> Sample:
        spec = self.specs[key]
        return Sample(
            name=spec.name,
            label_names=spec.label_names,
            label_values=(self.instance, *peer_labels),
            value=float(value),
            kind=spec.kind,
        )


def _statistics_samples(
    catalogue: MetricCatalogue,
    statistics: Statistics,
    scope: str,
    peer_labels: tuple[str, ...] = (),
) -> list[Sample]:
    samples: list[Sample] = []
    for field_name in STATISTICS_FIELDS:
        block = getattr(statistics, field_name)
        samples.append(catalogue.sample(f"{scope}{field_name}_packets", block.packets, *peer_labels))
        samples.append(catalogue.sample(f"{scope}{field_name}_bytes", block.bytes, *peer_labels))
    return samples


def peer_interface(catalogue: MetricCatalogue, snapshot: Snapshot, peer: Peer) -> str:
    return snapshot.interface or peer.interface or catalogue.fallback_interface


def _peer_samples(
    catalogue: MetricCatalogue,
    snapshot: Snapshot,
    peer: Peer,
    asns: Mapping[str, int],
) -> list[Sample]:
    interface = peer_interface(catalogue, snapshot, peer)
    state = peer.state
    if isinstance(state, Disconnected):
        return [catalogue.sample("peer_up", 0, peer.public_key, peer.name, interface, "")]
    if not isinstance(state, Connected):
        raise TypeError(f"unexpected peer state {state!r}")

    connection = state.connection
    labels = (peer.public_key, peer.name, interface, connection.method)
    samples = [
        catalogue.sample("peer_up", 1, *labels),
        catalogue.sample("peer_uptime_seconds", connection.established_seconds, *labels),
        catalogue.sample("peer_ipaddr_family", address_family(peer.address), *labels),
        catalogue.sample("peer_asn", asns.get(peer.address, 0), *labels),
    ]
    samples.extend(_statistics_samples(catalogue, connection.statistics, "peer_", labels))
    return samples


def map_snapshot(
    catalogue: MetricCatalogue,
    snapshot: Snapshot,
    asns: Mapping[str, int] | None = None,
) -> list[Sample]:
    """Map one successfully fetched snapshot to the full sample set.

    The result depends only on the arguments. Disconnected peers only report
    ``peer_up`` 0.
    """
    if asns is None:
        asns = {}
    samples = [
        catalogue.sample("up", 1),
        catalogue.sample("uptime_seconds", snapshot.uptime_seconds),
    ]
    samples.extend(_statistics_samples(catalogue, snapshot.statistics, ""))
    samples.append(catalogue.sample("peers_up_total", snapshot.peers_up_total))
    for peer in snapshot.peers.values():
        samples.extend(_peer_samples(catalogue, snapshot, peer, asns))
    return samples


def map_failure(catalogue: MetricCatalogue) -> list[Sample]:
    return [catalogue.sample("up", 0)]


class CycleOutcome(Enum):
    MAPPED = "mapped"
    FETCH_FAILED = "fetch_failed"


@dataclass(frozen=True)
class CycleResult:
    instance: str
    outcome: CycleOutcome
    samples: tuple[Sample, ...]
    duration_seconds: float
    error: str | None = None


class InstanceCollector:
    def __init__(
        self,
        config: InstanceConfig,
        *,
        asn_resolver: AsnResolver | None = None,
        status_timeout_seconds: float = DEFAULT_STATUS_TIMEOUT_SECONDS,
    ) -> None:
        self.config = config
        self.catalogue = MetricCatalogue.for_instance(config.name, fallback_interface=config.interface)
        self.asn_resolver = asn_resolver
        self.status_timeout_seconds = status_timeout_seconds

    def _lookup_asns(self, snapshot: Snapshot, timeout_seconds: float | None = None) -> dict[str, int]:
        if self.asn_resolver is None:
            return {}
        addresses = [peer.address for peer in snapshot.peers.values() if peer.is_up and peer.address]
        if not addresses:
            return {}
        return self.asn_resolver.resolve_many(addresses, timeout_seconds)

    def run_cycle(self, timeout_seconds: float | None = None) -> CycleResult:
        started = time.monotonic()
        status_timeout = self.status_timeout_seconds
        if timeout_seconds is not None:
            status_timeout = min(status_timeout, timeout_seconds)
        try:
            snapshot = read_status_socket(self.config.status_socket_path, status_timeout)
        except StatusError as error:
            duration = time.monotonic() - started
            LOGGER.warning("status read for %s failed: %s", self.config.name, error)
            return CycleResult(
                instance=self.config.name,
                outcome=CycleOutcome.FETCH_FAILED,
                samples=tuple(map_failure(self.catalogue)),
                duration_seconds=duration,
                error=str(error),
            )

        lookup_timeout = None
        if timeout_seconds is not None:
            lookup_timeout = timeout_seconds - (time.monotonic() - started)
        samples = map_snapshot(self.catalogue, snapshot, self._lookup_asns(snapshot, lookup_timeout))
        duration = time.monotonic() - started
        LOGGER.debug(
            "collected %s: %d peers, %d up, %d samples in %.3fs",
            self.config.name,
            len(snapshot.peers),
            snapshot.peers_up_total,
            len(samples),
            duration,
        )
        return CycleResult(
            instance=self.config.name,
            outcome=CycleOutcome.MAPPED,
            samples=tuple(samples),
            duration_seconds=duration,
        )


def samples_to_families(samples: list[Sample], documentation: Mapping[str, str]) -> list[Metric]:
    families: dict[str, Metric] = {}
    for sample in samples:
        family = families.get(sample.name)
        if family is None:
            family_type = CounterMetricFamily if sample.kind == COUNTER else GaugeMetricFamily
            family = family_type(
                sample.name,
                documentation.get(sample.name, sample.name),
                labels=list(sample.label_names),
            )
            families[sample.name] = family
        family.add_metric(list(sample.label_values), sample.value)
    return list(families.values())


class FastdCollector:
    """prometheus_client collector running one cycle per instance on each scrape."""

    def __init__(self, instances: list[InstanceCollector]) -> None:
        if not instances:
            raise ValueError("at least one fastd instance is required")
        self.instances = instances
        self._executor = ThreadPoolExecutor(max_workers=len(instances), thread_name_prefix="fastd-cycle")
        self._documentation = {
            spec.name: spec.documentation for spec in instances[0].catalogue.specs.values()
        }

    def run_cycles(self, timeout_seconds: float | None = None) -> list[CycleResult]:
        futures = [self._executor.submit(instance.run_cycle, timeout_seconds) for instance in self.instances]
        return [future.result() for future in futures]

    def collect(self) -> Iterator[Metric]:
        samples: list[Sample] = []
        for result in self.run_cycles(_SCRAPE_TIMEOUT.get()):
            samples.extend(result.samples)
        yield from samples_to_families(samples, self._documentation)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
