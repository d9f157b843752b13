"""Publishing discovered endpoints as environment variables.

Later steps read endpoints from the process environment:

- compose: ``<service>_host`` and ``<service>_<containerPort>``
- kind: ``<resource>_host`` and ``<resource>_<portToken>``, with the
  resource name sanitized into an identifier
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import dotenv_values

from ..errors import ConfigurationError, EnvironmentExportError
from ..shared.logging import get_logger

log = get_logger(__name__)


def sanitize(name: str) -> str:
    """Turn a resource name into an identifier-safe env var prefix."""
    return name.replace("/", "_").replace("-", "_")


def service_host_key(service: str) -> str:
    return f"{service}_host"


def service_port_key(service: str, container_port: int) -> str:
    return f"{service}_{container_port}"


def resource_host_key(resource: str) -> str:
    return f"{sanitize(resource)}_host"


def resource_port_key(resource: str, token: str) -> str:
    return f"{sanitize(resource)}_{token}"


class EnvironmentVariableBroker:
    """Write endpoints into the process-wide environment."""

    def __init__(self, environ: os._Environ[str] | dict[str, str] | None = None):
        """Initialize broker.

        Args:
            environ: Mapping to write into. Defaults to os.environ.
        """
        self.environ = os.environ if environ is None else environ
        self._published: dict[str, str] = {}

    @property
    def published(self) -> dict[str, str]:
        """Keys written through this broker, in publication order."""
        return dict(self._published)

    def publish(self, key: str, value: str | int, owner: str = "") -> None:
        """Set an environment variable, last write wins.

        Args:
            key: Variable name
            value: Variable value
            owner: Service or resource the value belongs to (for errors)

        Raises:
            EnvironmentExportError: If the key cannot be set.
        """
        if not key or "=" in key or "\0" in key:
            raise EnvironmentExportError(
                message=f"could not set env for {owner or key!r}: invalid key {key!r}",
                data={"key": key, "owner": owner},
            )
        text = str(value)
        try:
            self.environ[key] = text
        except (ValueError, OSError) as e:
            raise EnvironmentExportError(
                message=f"could not set env for {owner or key!r}: {e}",
                data={"key": key, "owner": owner},
            ) from e
        self._published[key] = text
        log.info("env_exported", key=key, value=text)


def export_env_file(path: Path, broker: EnvironmentVariableBroker) -> dict[str, str]:
    """Export the variables of a dotenv profile file.

    ${VARS} in values expand against earlier entries of the file and the
    process environment.

    Args:
        path: Profile file
        broker: Broker to publish through

    Returns:
        Mapping of exported variables

    Raises:
        ConfigurationError: If the file is missing or declares a key
            without a value.
    """
    if not path.is_file():
        raise ConfigurationError(
            message=f"init system environment file not found: {path}",
            data={"path": str(path)},
        )

    exported: dict[str, str] = {}
    for key, value in dotenv_values(path, interpolate=True).items():
        if value is None:
            raise ConfigurationError(
                message=f"{path}: expected KEY=VALUE for {key!r}",
                data={"path": str(path), "key": key},
            )
        broker.publish(key, value, owner=str(path))
        exported[key] = value
    return exported
