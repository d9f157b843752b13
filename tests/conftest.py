"""Shared test fixtures for e2e-setup tests.

- broker: EnvironmentVariableBroker writing into a plain dict
- make_spec: builds EnvironmentSpec instances with test defaults
- tcp_server: a real local asyncio TCP listener for readiness gates
"""

import asyncio
from collections.abc import AsyncGenerator
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from e2e_setup.config import Backend, EnvironmentSpec, KindSpec
from e2e_setup.environment.exporter import EnvironmentVariableBroker


@pytest.fixture
def environ() -> dict[str, str]:
    return {}


@pytest.fixture
def broker(environ: dict[str, str]) -> EnvironmentVariableBroker:
    return EnvironmentVariableBroker(environ)


@pytest.fixture
def compose_file(tmp_path: Path) -> Path:
    path = tmp_path / "docker-compose.yml"
    path.write_text(
        "services:\n"
        "  es:\n"
        "    image: elasticsearch:8\n"
        "    ports:\n"
        "      - 9200\n"
        "  worker:\n"
        "    image: busybox\n"
    )
    return path


@pytest.fixture
def kind_file(tmp_path: Path) -> Path:
    path = tmp_path / "kind.yaml"
    path.write_text("kind: Cluster\napiVersion: kind.x-k8s.io/v1alpha4\nname: e2e-test\n")
    return path


@pytest.fixture
def make_spec(tmp_path: Path):
    """Factory for EnvironmentSpec with test defaults."""

    def _make(**overrides) -> EnvironmentSpec:
        values = {
            "backend": Backend.COMPOSE,
            "file": tmp_path / "docker-compose.yml",
            "timeout": 5,
            "steps": None,
            "kind": KindSpec(),
            "identifier": "e2e",
        }
        values.update(overrides)
        return EnvironmentSpec(**values)

    return _make


def _container(container_id="abc123", ports=None, network_mode="default"):
    container = MagicMock()
    container.id = container_id
    container.attrs = {
        "HostConfig": {"NetworkMode": network_mode},
        "NetworkSettings": {"Ports": ports or {}},
    }
    return container


def _network(name, gateway="172.17.0.1"):
    network = MagicMock()
    network.name = name
    config = [{"Subnet": "172.17.0.0/16", "Gateway": gateway}] if gateway else [{}]
    network.attrs = {"IPAM": {"Config": config}}
    return network


@pytest_asyncio.fixture
async def tcp_server() -> AsyncGenerator[int, None]:
    """Listen on an ephemeral local port; yields the port."""

    async def _handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.close()

    server = await asyncio.start_server(_handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield port
    finally:
        server.close()
        await server.wait_closed()


@pytest.fixture
def make_container():
    """Factory for docker Container doubles with inspect attrs."""
    return _container


@pytest.fixture
def make_network():
    """Factory for docker Network doubles with an IPAM gateway."""
    return _network
