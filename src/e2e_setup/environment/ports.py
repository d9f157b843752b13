"""Port binding planning for compose stacks.

Reads the compose file into a typed stack definition, derives which
container ports must become reachable, and maps each one to the host
port docker actually published once the stack runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import docker
import docker.errors
import yaml

from ..errors import ConfigurationError, ResolutionError
from ..shared.logging import get_logger

log = get_logger(__name__)

HOST_NETWORK_MODE = "host"
COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"


class StackDefinitionError(ConfigurationError):
    """Compose file could not be turned into a stack definition."""


class PortsFieldError(StackDefinitionError):
    """A service's ports field is present but not a list."""


class MalformedPortError(StackDefinitionError):
    """A port entry could not be parsed."""


@dataclass(frozen=True)
class ServiceDefinition:
    """One compose service and the container ports it declares."""

    name: str
    ports: tuple[int, ...] | None = None


@dataclass(frozen=True)
class StackDefinition:
    """Services of a compose file."""

    path: Path
    services: tuple[ServiceDefinition, ...] = ()

    def service(self, name: str) -> ServiceDefinition | None:
        for service in self.services:
            if service.name == name:
                return service
        return None


@dataclass
class ServicePortBinding:
    """An expected container port and, once resolved, where it is published."""

    service: str
    container_port: int
    host_ip: str | None = None
    published_port: int | None = None

    @property
    def resolved(self) -> bool:
        return self.published_port is not None

    def bind(self, host_ip: str, published_port: int) -> None:
        """Record the resolved mapping. A binding resolves exactly once."""
        if self.resolved:
            raise ResolutionError(
                message=(
                    f"port {self.container_port} of service {self.service!r} "
                    f"is already bound to {self.host_ip}:{self.published_port}"
                ),
                data={"service": self.service, "port": self.container_port},
            )
        self.host_ip = host_ip
        self.published_port = published_port


def parse_port(value: Any, service: str = "") -> int:
    """Extract the container side of a compose port entry.

    Accepts ``9200``, ``"9200"``, ``"32001:9200"``, ``"127.0.0.1:32001:9200"``,
    an optional ``/tcp`` suffix, and long syntax ``{"target": 9200, ...}``.

    Raises:
        MalformedPortError: If no container port can be extracted.
    """
    if isinstance(value, bool):
        raise MalformedPortError(
            message=f"unknown port information for service {service!r}: {value!r}",
            data={"service": service, "port": value},
        )
    if isinstance(value, int):
        return value
    if isinstance(value, dict):
        if "target" not in value:
            raise MalformedPortError(
                message=f"port mapping of service {service!r} has no target: {value!r}",
                data={"service": service, "port": value},
            )
        return parse_port(value["target"], service)
    if isinstance(value, str):
        container_side = value.rsplit(":", 1)[-1].split("/", 1)[0].strip()
        try:
            return int(container_side)
        except ValueError:
            raise MalformedPortError(
                message=f"unknown port information for service {service!r}: {value!r}",
                data={"service": service, "port": value},
            ) from None
    raise MalformedPortError(
        message=f"unknown port information for service {service!r}: {value!r}",
        data={"service": service, "port": value},
    )


def parse_stack_definition(data: dict[str, Any], path: Path) -> StackDefinition:
    """Validate a parsed compose document."""
    if not isinstance(data, dict):
        raise StackDefinitionError(message=f"compose file {path} is not a mapping")
    raw_services = data.get("services") or {}
    if not isinstance(raw_services, dict):
        raise StackDefinitionError(message=f"services of compose file {path} is not a mapping")

    services = []
    for name, body in raw_services.items():
        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise StackDefinitionError(
                message=f"service {name!r} of compose file {path} is not a mapping",
                data={"service": name},
            )
        raw_ports = body.get("ports")
        if raw_ports is None:
            services.append(ServiceDefinition(name=name))
            continue
        if not isinstance(raw_ports, list):
            raise PortsFieldError(
                message=f"ports of service {name!r} must be a list, got {raw_ports!r}",
                data={"service": name},
            )
        ports: list[int] = []
        for entry in raw_ports:
            port = parse_port(entry, name)
            if port not in ports:
                ports.append(port)
        services.append(ServiceDefinition(name=name, ports=tuple(ports)))

    return StackDefinition(path=path, services=tuple(services))


def load_stack_definition(path: Path) -> StackDefinition:
    """Load and validate a compose file."""
    if not path.is_file():
        raise ConfigurationError(
            message=f"compose config file not found: {path}",
            data={"path": str(path)},
        )
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise StackDefinitionError(message=f"invalid compose file {path}: {e}") from e
    return parse_stack_definition(data, path)


def published_port_for(attrs: dict[str, Any], container_port: int) -> int | None:
    """Find the host port docker published for a tcp container port.

    Args:
        attrs: Container inspect data
        container_port: Port inside the container

    Returns:
        Published host port, the container port itself in host network mode,
        or None if there is no mapping.
    """
    if (attrs.get("HostConfig") or {}).get("NetworkMode") == HOST_NETWORK_MODE:
        return container_port

    ports = (attrs.get("NetworkSettings") or {}).get("Ports") or {}
    for key, mappings in ports.items():
        number, _, proto = key.partition("/")
        if proto and proto != "tcp":
            continue
        if int(number) != container_port:
            continue
        for mapping in mappings or []:
            if mapping.get("HostPort"):
                return int(mapping["HostPort"])
    return None


def find_container(client: docker.DockerClient, project: str, service: str):
    """Find the running container of a compose service.

    Raises:
        ResolutionError: If no container carries the compose labels.
    """
    filters = {"label": [f"{COMPOSE_PROJECT_LABEL}={project}", f"{COMPOSE_SERVICE_LABEL}={service}"]}
    try:
        containers = client.containers.list(filters=filters)
    except docker.errors.APIError as e:
        raise ResolutionError(
            message=f"could not list containers of service {service!r}: {e}",
            data={"service": service},
        ) from e
    if not containers:
        raise ResolutionError(
            message=f"could not find container of service {service!r} in project {project!r}",
            data={"service": service, "project": project},
        )
    return containers[0]


class PortBindingPlanner:
    """Plan and resolve port bindings of a compose stack."""

    def __init__(self, default_timeout: int):
        """Initialize planner.

        Args:
            default_timeout: Seconds each binding may take to become ready.
        """
        self.timeout = default_timeout

    def plan(self, stack: StackDefinition) -> dict[str, list[ServicePortBinding]]:
        """Derive the container ports that must become reachable, per service."""
        plan: dict[str, list[ServicePortBinding]] = {}
        for service in stack.services:
            if service.ports is None:
                continue
            plan[service.name] = [ServicePortBinding(service.name, p) for p in service.ports]
        return plan

    def resolve(self, binding: ServicePortBinding, container, host_ip: str) -> int:
        """Resolve a binding against the live container.

        Args:
            binding: Binding to resolve
            container: docker Container of the binding's service
            host_ip: Address the published port is reachable on

        Returns:
            The published port.
        """
        try:
            container.reload()
        except docker.errors.APIError as e:
            raise ResolutionError(
                message=f"could not inspect container of service {binding.service!r}: {e}",
                data={"service": binding.service, "port": binding.container_port},
            ) from e

        published = published_port_for(container.attrs, binding.container_port)
        if published is None:
            raise ResolutionError(
                message=(
                    f"port {binding.container_port} of service {binding.service!r} "
                    "is not published by the running container"
                ),
                data={"service": binding.service, "port": binding.container_port},
            )
        binding.bind(host_ip, published)
        log.info(
            "binding_resolved",
            service=binding.service,
            container_port=binding.container_port,
            published_port=published,
        )
        return published
