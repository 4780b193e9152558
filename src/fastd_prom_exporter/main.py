from __future__ import annotations

import argparse
import html
import logging
import math
import os
import socket
from dataclasses import dataclass
from socketserver import ThreadingMixIn
from typing import Any, Callable, Iterable
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import CollectorRegistry, make_wsgi_app

from fastd_prom_exporter.asn import (
    DEFAULT_ASN_LOOKUP_TIMEOUT_SECONDS,
    DEFAULT_ASN_LOOKUP_URL,
    AsnResolver,
    validate_url_template,
)
from fastd_prom_exporter.config import DEFAULT_CONFIG_PATH_PATTERN, ConfigError, resolve_instances
from fastd_prom_exporter.exporter import FastdCollector, InstanceCollector, scrape_timeout
from fastd_prom_exporter.status import DEFAULT_STATUS_TIMEOUT_SECONDS


LOGGER = logging.getLogger("fastd_prom_exporter")

# Leave headroom for rendering and the HTTP round trip.
SCRAPE_TIMEOUT_OFFSET_SECONDS = 0.5

LANDING_PAGE = """<html>
<head><title>fastd exporter</title></head>
<body>
<h1>fastd exporter</h1>
<p><a href="{path}">Metrics</a></p>
</body>
</html>
"""

WSGIApp = Callable[[dict[str, Any], Callable[..., Any]], Iterable[bytes]]


@dataclass(frozen=True)
class AppConfig:
    instances: list[str]
    config_path_pattern: str
    listen_host: str
    listen_port: int
    telemetry_path: str
    status_timeout_seconds: float
    asn_lookup: bool
    asn_lookup_url: str
    asn_lookup_timeout_seconds: float
    log_level: str


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_listen_address(address: str) -> tuple[str, int]:
    host, separator, port = address.strip().rpartition(":")
    if not separator or not port.isdigit():
        raise ValueError(f"invalid listen address {address!r}, expected [host]:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Prometheus exporter for fastd status sockets")
    parser.add_argument(
        "instances",
        nargs="*",
        default=os.getenv("FASTD_EXPORTER_INSTANCES", "").split(),
        help="fastd instance names, or name=/path/to/status.sock to skip config parsing",
    )
    parser.add_argument(
        "--config-path",
        dest="config_path_pattern",
        default=os.getenv("FASTD_EXPORTER_CONFIG_PATH", DEFAULT_CONFIG_PATH_PATTERN),
        help="fastd config path, %%s will be replaced with the fastd instance name",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=os.getenv("FASTD_EXPORTER_LISTEN_ADDRESS", ":9281"),
        help="address on which to expose metrics and web interface",
    )
    parser.add_argument(
        "--web.telemetry-path",
        dest="telemetry_path",
        default=os.getenv("FASTD_EXPORTER_TELEMETRY_PATH", "/metrics"),
        help="path under which to expose metrics",
    )
    parser.add_argument(
        "--status-timeout-seconds",
        type=float,
        default=_float_env("FASTD_EXPORTER_STATUS_TIMEOUT_SECONDS", DEFAULT_STATUS_TIMEOUT_SECONDS),
        help="timeout for connecting to and reading a status socket",
    )
    parser.add_argument(
        "--asn-lookup",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("FASTD_EXPORTER_ASN_LOOKUP", True),
        help="resolve the ASN connected peers are connecting from",
    )
    parser.add_argument(
        "--asn-lookup-url",
        default=os.getenv("FASTD_EXPORTER_ASN_LOOKUP_URL", DEFAULT_ASN_LOOKUP_URL),
        help="network-info lookup URL, {ip} will be replaced with the peer address",
    )
    parser.add_argument(
        "--asn-lookup-timeout-seconds",
        type=float,
        default=_float_env("FASTD_EXPORTER_ASN_LOOKUP_TIMEOUT_SECONDS", DEFAULT_ASN_LOOKUP_TIMEOUT_SECONDS),
        help="upper bound for ASN lookups within one scrape",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("FASTD_EXPORTER_LOG_LEVEL", "INFO"),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def load_config(argv: list[str] | None = None) -> AppConfig:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    if not args.instances:
        parser.error("No instances specified, aborting.")
    if not args.telemetry_path.startswith("/"):
        parser.error("--web.telemetry-path must start with '/'")
    try:
        listen_host, listen_port = parse_listen_address(args.listen_address)
    except ValueError as error:
        parser.error(str(error))
    if args.asn_lookup:
        try:
            validate_url_template(args.asn_lookup_url)
        except ValueError as error:
            parser.error(str(error))
    return AppConfig(
        instances=list(args.instances),
        config_path_pattern=args.config_path_pattern,
        listen_host=listen_host,
        listen_port=listen_port,
        telemetry_path=args.telemetry_path,
        status_timeout_seconds=args.status_timeout_seconds,
        asn_lookup=bool(args.asn_lookup),
        asn_lookup_url=args.asn_lookup_url,
        asn_lookup_timeout_seconds=args.asn_lookup_timeout_seconds,
        log_level=args.log_level,
    )


def scrape_budget(environ: dict[str, Any]) -> float | None:
    raw = environ.get("HTTP_X_PROMETHEUS_SCRAPE_TIMEOUT_SECONDS")
    if not raw:
        return None
    try:
        timeout = float(raw)
    except ValueError:
        LOGGER.debug("ignoring malformed scrape timeout header %r", raw)
        return None
    if not math.isfinite(timeout) or timeout <= 0:
        return None
    return max(timeout - SCRAPE_TIMEOUT_OFFSET_SECONDS, timeout / 2)


def build_wsgi_app(registry: CollectorRegistry, telemetry_path: str) -> WSGIApp:
    metrics_app = make_wsgi_app(registry)
    landing_page = LANDING_PAGE.format(path=html.escape(telemetry_path, quote=True)).encode("utf-8")

    def app(environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        path = environ.get("PATH_INFO") or "/"
        if path == telemetry_path:
            with scrape_timeout(scrape_budget(environ)):
                return metrics_app(environ, start_response)
        if path == "/":
            start_response("200 OK", [("Content-Type", "text/html; charset=utf-8")])
            return [landing_page]
        start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
        return [b"Not Found\n"]

    return app


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        LOGGER.debug("http %s - %s", self.address_string(), format % args)


def make_http_server(host: str, port: int, app: WSGIApp) -> WSGIServer:
    bind_host = host or "0.0.0.0"
    family = socket.getaddrinfo(bind_host, port, type=socket.SOCK_STREAM)[0][0]

    class Server(_ThreadingWSGIServer):
        address_family = family

    return make_server(bind_host, port, app, server_class=Server, handler_class=_QuietHandler)


def build_collector(config: AppConfig, resolver: AsnResolver | None) -> FastdCollector:
    instances = resolve_instances(config.instances, config.config_path_pattern)
    return FastdCollector(
        [
            InstanceCollector(
                instance,
                asn_resolver=resolver,
                status_timeout_seconds=config.status_timeout_seconds,
            )
            for instance in instances
        ]
    )


def main(argv: list[str] | None = None) -> None:
    config = load_config(argv)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    resolver = None
    if config.asn_lookup:
        resolver = AsnResolver(config.asn_lookup_url, config.asn_lookup_timeout_seconds)
    try:
        collector = build_collector(config, resolver)
    except ConfigError as error:
        LOGGER.error("%s", error)
        if resolver is not None:
            resolver.close()
        raise SystemExit(1) from error

    registry = CollectorRegistry()
    registry.register(collector)
    server = make_http_server(
        config.listen_host,
        config.listen_port,
        build_wsgi_app(registry, config.telemetry_path),
    )
    LOGGER.info(
        "metrics server listening on http://%s:%d%s",
        config.listen_host or "0.0.0.0",
        config.listen_port,
        config.telemetry_path,
    )

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        LOGGER.info("shutdown requested, exiting")
    finally:
        server.server_close()
        collector.close()
        if resolver is not None:
            resolver.close()


if __name__ == "__main__":
    main()
