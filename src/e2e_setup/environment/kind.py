"""Ephemeral kind cluster backend.

Creates the cluster with the kind CLI, loads pre-built images into it,
connects a kubernetes client, runs the setup steps and finally opens the
declared port-forwards.
"""

from __future__ import annotations

import asyncio
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import kubernetes
import yaml
from kubernetes.config.config_exception import ConfigException

from ..config import EnvironmentSpec
from ..errors import ConfigurationError, ProvisioningError, command_failure
from ..shared.logging import get_logger
from ..shared.paths import ensure_work_dir, get_kubeconfig_path
from .exporter import EnvironmentVariableBroker, export_env_file
from .portforward import PortForwardContext, PortForwardSupervisor
from .steps import RunSteps, run_steps

log = get_logger(__name__)


@dataclass
class ClusterHandle:
    """Connected cluster: its kubeconfig and an API client built from it."""

    kubeconfig: Path
    api_client: kubernetes.client.ApiClient = field(repr=False)

    @property
    def core_v1(self) -> kubernetes.client.CoreV1Api:
        return kubernetes.client.CoreV1Api(self.api_client)

    @property
    def apps_v1(self) -> kubernetes.client.AppsV1Api:
        return kubernetes.client.AppsV1Api(self.api_client)


def connect_cluster(kubeconfig: Path) -> ClusterHandle:
    """Build a kubernetes client from a kubeconfig file."""
    try:
        api_client = kubernetes.config.new_client_from_config(config_file=str(kubeconfig))
    except (ConfigException, OSError) as e:
        raise ProvisioningError(
            message=f"connect to k8s cluster failed according to config file {kubeconfig}: {e}",
            data={"kubeconfig": str(kubeconfig)},
        ) from e
    return ClusterHandle(kubeconfig=kubeconfig, api_client=api_client)


def cluster_name(kind_config: Path) -> str | None:
    """Read the cluster name from a kind config, if it sets one."""
    try:
        with open(kind_config) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError):
        return None
    name = data.get("name") if isinstance(data, dict) else None
    return str(name) if name else None


class KindCli:
    """Drive the kind CLI."""

    def __init__(self, kubeconfig: Path):
        self.kubeconfig = kubeconfig

    def _run(self, args: list[str], action: str, **data) -> None:
        cmd = ["kind", *args]
        log.debug("kind_command", command=" ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError:
            raise ProvisioningError(message="kind not found. Is kind installed?") from None
        if result.returncode != 0:
            raise command_failure(ProvisioningError, action, result.returncode, result.stderr, **data)

    def create_cluster(self, kind_config: Path) -> None:
        log.info("cluster_create", config=str(kind_config), kubeconfig=str(self.kubeconfig))
        self._run(
            ["create", "cluster", "--config", str(kind_config), "--kubeconfig", str(self.kubeconfig)],
            "creating kind cluster",
            config=str(kind_config),
        )
        log.info("cluster_created")

    def load_image(self, image: str, name: str | None = None) -> None:
        log.info("image_import", image=image)
        args = ["load", "docker-image", image]
        if name:
            args.extend(["--name", name])
        self._run(args, f"importing docker image {image!r}", image=image)

    def delete_cluster(self, name: str | None = None) -> None:
        log.info("cluster_delete", name=name)
        args = ["delete", "cluster", "--kubeconfig", str(self.kubeconfig)]
        if name:
            args.extend(["--name", name])
        self._run(args, "deleting kind cluster")


@dataclass
class ClusterResult:
    """What the cluster backend leaves running."""

    cluster: ClusterHandle | None = None
    forward: PortForwardContext | None = None


class ClusterProvisioner:
    """Bring up the kind backend."""

    def __init__(
        self,
        spec: EnvironmentSpec,
        broker: EnvironmentVariableBroker,
        steps_runner: RunSteps = run_steps,
        kind: KindCli | None = None,
        connect=connect_cluster,
    ):
        """Initialize provisioner.

        Args:
            spec: Environment description.
            broker: Where endpoints and KUBECONFIG are published.
            steps_runner: Runs the setup steps against the cluster.
            kind: kind CLI driver.
            connect: Builds a ClusterHandle from a kubeconfig path.
        """
        self.spec = spec
        self.broker = broker
        self.steps_runner = steps_runner
        self.kubeconfig = spec.kubeconfig or get_kubeconfig_path()
        self.kind = kind or KindCli(self.kubeconfig)
        self.connect = connect

    async def setup(self) -> ClusterResult:
        """Create the cluster, run steps and expose ports.

        Returns:
            ClusterResult. Empty if no steps were declared, in which case no
            cluster is created.
        """
        spec = self.spec
        if spec.steps is None:
            log.info("no_steps", detail="no steps provided, skipping cluster creation")
            return ClusterResult()

        if not spec.file.is_file():
            raise ConfigurationError(
                message=f"kind config file not found: {spec.file}", data={"path": str(spec.file)}
            )

        if spec.init_system_environment:
            export_env_file(spec.init_system_environment, self.broker)

        if spec.kubeconfig is None:
            ensure_work_dir()
        await asyncio.to_thread(self.kind.create_cluster, spec.file)
        self.broker.publish("KUBECONFIG", str(self.kubeconfig), owner="kind")

        name = cluster_name(spec.file)
        for image in spec.kind.import_images:
            await asyncio.to_thread(self.kind.load_image, os.path.expandvars(image), name)

        cluster = self.connect(self.kubeconfig)
        await self.steps_runner(spec.steps, spec.timeout, cluster)

        result = ClusterResult(cluster=cluster)
        if spec.kind.expose_ports:
            supervisor = PortForwardSupervisor(cluster, self.broker, spec.timeout)
            result.forward = await supervisor.expose(spec.kind.expose_ports)
        return result

    def teardown(self) -> None:
        """Delete the cluster."""
        self.kind.delete_cluster(cluster_name(self.spec.file))
