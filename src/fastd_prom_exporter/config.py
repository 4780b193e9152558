from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path


_STATUS_SOCKET = re.compile(r'^[ \t]*status[ \t]+socket[ \t]+"([^"]+)"[ \t]*;', re.MULTILINE)
_INTERFACE = re.compile(r'^[ \t]*interface[ \t]+"([^"]+)"[ \t]*;', re.MULTILINE)
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
LOGGER = logging.getLogger("fastd_prom_exporter.config")

DEFAULT_CONFIG_PATH_PATTERN = "/etc/fastd/%s/fastd.conf"


class ConfigError(Exception):
    """Raised when an instance cannot be set up for collection."""

    def __init__(self, instance: str, message: str) -> None:
        super().__init__(message)
        self.instance = instance


class ConfigUnreadable(ConfigError):
    pass


class ConfigMissingField(ConfigError):
    pass


class StatusChannelUnavailable(ConfigError):
    pass


@dataclass(frozen=True)
class InstanceConfig:
    name: str
    status_socket_path: Path
    config_path: Path | None = None
    interface: str | None = None


def config_path_for(instance: str, pattern: str = DEFAULT_CONFIG_PATH_PATTERN) -> Path:
    return Path(pattern.replace("%s", instance))


def parse_config_text(instance: str, text: str) -> tuple[str, str | None]:
    # Declarations count only at the start of a line, outside comments.
    text = _BLOCK_COMMENT.sub("", text)
    match = _STATUS_SOCKET.search(text)
    if match is None:
        raise ConfigMissingField(instance, f"Instance {instance} is missing 'status socket' declaration.")
    interface_match = _INTERFACE.search(text)
    interface = interface_match.group(1) if interface_match else None
    return match.group(1), interface


def _require_socket(instance: str, socket_path: Path) -> None:
    if not socket_path.exists():
        raise StatusChannelUnavailable(
            instance,
            f"Status socket at {socket_path} does not exist. Is the fastd instance {instance} up?",
        )


def resolve_instance(instance: str, pattern: str = DEFAULT_CONFIG_PATH_PATTERN) -> InstanceConfig:
    """Read an instance's fastd.conf and locate its status socket.

    Raises ConfigUnreadable when the file cannot be read, ConfigMissingField when
    it has no ``status socket`` declaration and StatusChannelUnavailable when the
    declared socket does not exist on disk.
    """
    config_path = config_path_for(instance, pattern)
    try:
        text = config_path.read_text(encoding="utf-8", errors="replace")
    except OSError as error:
        raise ConfigUnreadable(instance, f"cannot read {config_path}: {error}") from error

    socket_path, interface = parse_config_text(instance, text)
    status_socket_path = Path(socket_path)
    _require_socket(instance, status_socket_path)
    return InstanceConfig(
        name=instance,
        status_socket_path=status_socket_path,
        config_path=config_path,
        interface=interface,
    )


def resolve_instance_spec(spec: str, pattern: str = DEFAULT_CONFIG_PATH_PATTERN) -> InstanceConfig:
    # "name=/run/fastd.sock" bypasses the config file entirely.
    name, separator, socket_path = spec.partition("=")
    name = name.strip()
    if not separator:
        return resolve_instance(name, pattern)

    socket_path = socket_path.strip()
    if not name or not socket_path:
        raise ConfigMissingField(spec, f"Invalid instance specification {spec!r}, expected name=/path/to/socket.")
    status_socket_path = Path(socket_path)
    _require_socket(name, status_socket_path)
    return InstanceConfig(name=name, status_socket_path=status_socket_path)


def resolve_instances(specs: list[str], pattern: str = DEFAULT_CONFIG_PATH_PATTERN) -> list[InstanceConfig]:
    instances: list[InstanceConfig] = []
    seen: set[str] = set()
    for spec in specs:
        config = resolve_instance_spec(spec, pattern)
        if config.name in seen:
            raise ConfigError(config.name, f"Instance {config.name} was given more than once.")
        seen.add(config.name)
        LOGGER.info("reading fastd data for %s from %s", config.name, config.status_socket_path)
        instances.append(config)
    return instances
