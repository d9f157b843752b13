"""Environment configuration.

Loads the ``setup`` block of an e2e.yaml file into immutable dataclasses.
Supports environment variable overrides for the values CI usually tweaks.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError

# Default values
DEFAULT_TIMEOUT = 600
DEFAULT_IDENTIFIER = "e2e"
DEFAULT_NAMESPACE = "default"

# Environment variable mappings
ENV_VARS = {
    "timeout": "E2E_SETUP_TIMEOUT",
    "identifier": "E2E_SETUP_IDENTIFIER",
    "kubeconfig": "E2E_SETUP_KUBECONFIG",
}

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smh]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


class Backend(Enum):
    """Kind of disposable environment."""

    COMPOSE = "compose"
    CLUSTER = "cluster"

    @classmethod
    def parse(cls, value: str) -> Backend:
        normalized = str(value).strip().lower()
        if normalized == "kind":
            return cls.CLUSTER
        try:
            return cls(normalized)
        except ValueError:
            raise ConfigurationError(
                message=f"unknown environment backend: {value!r} (expected compose or kind)",
                data={"env": value},
            ) from None


@dataclass(frozen=True)
class WaitCondition:
    """Wait until a cluster resource satisfies a condition."""

    resource: str
    for_condition: str
    namespace: str = DEFAULT_NAMESPACE
    label_selector: str = ""
    timeout: int | None = None

    @property
    def names_single_resource(self) -> bool:
        """Whether the resource is given as kind/name."""
        return "/" in self.resource


@dataclass(frozen=True)
class Step:
    """One setup step: apply manifests, run a command, then wait."""

    name: str = ""
    path: str = ""
    command: str = ""
    waits: tuple[WaitCondition, ...] = ()


@dataclass(frozen=True)
class ExposePort:
    """Ports of one cluster resource to tunnel to localhost."""

    resource: str
    port: str
    namespace: str = DEFAULT_NAMESPACE

    @property
    def tokens(self) -> list[str]:
        """Comma separated port tokens, whitespace trimmed."""
        return [p.strip() for p in self.port.split(",") if p.strip()]


@dataclass(frozen=True)
class KindSpec:
    """Cluster backend options."""

    import_images: tuple[str, ...] = ()
    expose_ports: tuple[ExposePort, ...] = ()


@dataclass(frozen=True)
class EnvironmentSpec:
    """Declarative description of one test environment."""

    backend: Backend
    file: Path
    timeout: int = DEFAULT_TIMEOUT
    steps: tuple[Step, ...] | None = None
    kind: KindSpec = field(default_factory=KindSpec)
    init_system_environment: Path | None = None
    identifier: str = DEFAULT_IDENTIFIER
    kubeconfig: Path | None = None


def parse_duration(value: Any) -> int:
    """Parse a timeout given as seconds or as a duration string.

    Args:
        value: int seconds, or "90", "90s", "20m", "1h"

    Returns:
        Timeout in seconds
    """
    if isinstance(value, bool):
        raise ConfigurationError(message=f"invalid timeout: {value!r}")
    if isinstance(value, int):
        seconds = value
    else:
        match = _DURATION_PATTERN.match(str(value))
        if not match:
            raise ConfigurationError(message=f"invalid timeout: {value!r}")
        seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds < 0:
        raise ConfigurationError(message=f"invalid timeout: {value!r}")
    return seconds


def _resolve_path(base_dir: Path, value: str) -> Path:
    path = Path(os.path.expandvars(value))
    if not path.is_absolute():
        path = base_dir / path
    return path


def _parse_wait(raw: dict[str, Any]) -> WaitCondition:
    if not isinstance(raw, dict):
        raise ConfigurationError(message=f"wait entry must be a mapping, got {raw!r}")
    timeout = raw.get("timeout")
    return WaitCondition(
        resource=str(raw.get("resource", "")),
        for_condition=str(raw.get("for", "")),
        namespace=str(raw.get("namespace") or DEFAULT_NAMESPACE),
        label_selector=str(raw.get("label-selector") or ""),
        timeout=parse_duration(timeout) if timeout is not None else None,
    )


def _parse_step(raw: dict[str, Any]) -> Step:
    if not isinstance(raw, dict):
        raise ConfigurationError(message=f"step must be a mapping, got {raw!r}")
    waits = raw.get("wait") or []
    return Step(
        name=str(raw.get("name") or ""),
        path=str(raw.get("path") or ""),
        command=str(raw.get("command") or ""),
        waits=tuple(_parse_wait(w) for w in waits),
    )


def _parse_kind(raw: dict[str, Any] | None) -> KindSpec:
    if not raw:
        return KindSpec()
    exposes = []
    for entry in raw.get("expose-ports") or []:
        if not isinstance(entry, dict) or not entry.get("resource") or not entry.get("port"):
            raise ConfigurationError(
                message="expose-ports entries need both resource and port",
                data={"entry": entry},
            )
        exposes.append(
            ExposePort(
                resource=str(entry["resource"]),
                port=str(entry["port"]),
                namespace=str(entry.get("namespace") or DEFAULT_NAMESPACE),
            )
        )
    return KindSpec(
        import_images=tuple(str(i) for i in raw.get("import-images") or []),
        expose_ports=tuple(exposes),
    )


def parse_config(data: dict[str, Any], base_dir: Path) -> EnvironmentSpec:
    """Build an EnvironmentSpec from a parsed e2e.yaml document.

    Precedence (highest to lowest):
    1. Environment variables
    2. e2e.yaml
    3. Defaults

    Args:
        data: Parsed YAML document
        base_dir: Directory relative paths are resolved against

    Returns:
        Validated EnvironmentSpec
    """
    setup = (data or {}).get("setup")
    if not isinstance(setup, dict):
        raise ConfigurationError(message="e2e config has no setup block")

    backend = Backend.parse(setup.get("env", ""))

    file_value = setup.get("file")
    if not file_value:
        raise ConfigurationError(message=f"no {backend.value} config file was provided")
    definition = _resolve_path(base_dir, str(file_value))

    timeout = DEFAULT_TIMEOUT
    if setup.get("timeout") is not None:
        timeout = parse_duration(setup["timeout"])
    if os.environ.get(ENV_VARS["timeout"]):
        timeout = parse_duration(os.environ[ENV_VARS["timeout"]])
    if timeout == 0:
        timeout = DEFAULT_TIMEOUT

    raw_steps = setup.get("steps")
    steps = None if raw_steps is None else tuple(_parse_step(s) for s in raw_steps)
    if backend == Backend.COMPOSE and steps:
        if any(step.waits for step in steps):
            raise ConfigurationError(message="wait blocks are only supported by the kind backend")

    init_env = setup.get("init-system-environment")
    identifier = os.environ.get(ENV_VARS["identifier"]) or str(
        setup.get("identifier") or DEFAULT_IDENTIFIER
    )
    kubeconfig = os.environ.get(ENV_VARS["kubeconfig"])

    return EnvironmentSpec(
        backend=backend,
        file=definition,
        timeout=timeout,
        steps=steps,
        kind=_parse_kind(setup.get("kind")),
        init_system_environment=_resolve_path(base_dir, str(init_env)) if init_env else None,
        identifier=identifier,
        kubeconfig=Path(kubeconfig) if kubeconfig else None,
    )


def load_config(path: str | Path) -> EnvironmentSpec:
    """Load an e2e.yaml file.

    Args:
        path: Path to the e2e.yaml file

    Returns:
        Validated EnvironmentSpec
    """
    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigurationError(
            message=f"e2e config file not found: {config_path}",
            data={"path": str(config_path)},
        )
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(message=f"invalid e2e config {config_path}: {e}") from e

    return parse_config(data, config_path.resolve().parent)
