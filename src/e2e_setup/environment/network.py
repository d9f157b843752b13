"""Docker network discovery.

Finds the network compose containers are reachable through and the
gateway address the host uses to reach their published ports.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import docker
import docker.errors

from ..errors import ProvisioningError
from ..shared.logging import get_logger

log = get_logger(__name__)

DEFAULT_BRIDGE = "bridge"
FALLBACK_NETWORK = "e2e_setup_default"
FALLBACK_LABELS = {"e2e-setup": "true"}


@dataclass(frozen=True)
class NetworkInfo:
    """Selected network and its gateway."""

    name: str
    gateway: str


def gateway_from_attrs(name: str, attrs: dict[str, Any]) -> str:
    """Extract the first non-empty gateway from a network's IPAM config.

    Raises:
        ProvisioningError: If no IPAM entry carries a gateway.
    """
    for entry in (attrs.get("IPAM") or {}).get("Config") or []:
        gateway = (entry or {}).get("Gateway")
        if gateway:
            return gateway
    raise ProvisioningError(
        message=f"failed to get gateway IP from network settings of {name!r}",
        data={"network": name},
    )


class NetworkResolver:
    """Select the default bridge network, creating a fallback if needed."""

    def __init__(self, client: docker.DockerClient):
        self.client = client

    def resolve(self) -> NetworkInfo:
        """Pick the network and read its gateway.

        Returns:
            NetworkInfo for the "bridge" network or the fallback network.
        """
        try:
            networks = self.client.networks.list()
        except docker.errors.APIError as e:
            raise ProvisioningError(message=f"could not list docker networks: {e}") from e

        selected = None
        fallback = None
        for network in networks:
            if network.name == DEFAULT_BRIDGE:
                selected = network
                break
            if network.name == FALLBACK_NETWORK:
                fallback = network

        if selected is None:
            selected = fallback or self._create_fallback()

        try:
            selected.reload()
        except docker.errors.APIError as e:
            raise ProvisioningError(
                message=f"could not inspect docker network {selected.name!r}: {e}",
                data={"network": selected.name},
            ) from e

        info = NetworkInfo(selected.name, gateway_from_attrs(selected.name, selected.attrs))
        log.info("network_resolved", network=info.name, gateway=info.gateway)
        return info

    def _create_fallback(self):
        log.info("network_create", network=FALLBACK_NETWORK)
        try:
            return self.client.networks.create(
                FALLBACK_NETWORK,
                driver="bridge",
                attachable=True,
                labels=FALLBACK_LABELS,
            )
        except docker.errors.APIError as e:
            raise ProvisioningError(
                message=f"could not create docker network {FALLBACK_NETWORK!r}: {e}",
                data={"network": FALLBACK_NETWORK},
            ) from e
