"""Docker compose backend.

Brings the stack up, works out where each declared port was published,
waits for every port to be reachable and publishes the endpoints before
running the setup steps.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum

import docker
import docker.errors

from ..config import EnvironmentSpec
from ..errors import ProvisioningError
from ..shared.logging import get_logger
from .exporter import (
    EnvironmentVariableBroker,
    export_env_file,
    service_host_key,
    service_port_key,
)
from .health import DockerExec, ExecFn, HealthProbe
from .network import NetworkInfo, NetworkResolver
from .ports import PortBindingPlanner, ServicePortBinding, find_container, load_stack_definition
from .stack import StackManager
from .steps import RunSteps, run_steps

log = get_logger(__name__)


class ComposeStage(Enum):
    """Where the compose setup currently is."""

    IDLE = "idle"
    RESOLVE_NETWORK = "resolve_network"
    START_STACK = "start_stack"
    PLAN_BINDINGS = "plan_bindings"
    RESOLVE_BINDINGS = "resolve_bindings"
    PROBE_ALL = "probe_all"
    PUBLISH_ENV = "publish_env"
    RUN_STEPS = "run_steps"
    DONE = "done"


def docker_client() -> docker.DockerClient:
    """Connect to the docker daemon configured in the environment."""
    try:
        return docker.from_env()
    except docker.errors.DockerException as e:
        raise ProvisioningError(message=f"could not connect to docker: {e}") from e


class ComposeOrchestrator:
    """Bring up the compose backend."""

    def __init__(
        self,
        spec: EnvironmentSpec,
        broker: EnvironmentVariableBroker,
        client: docker.DockerClient | None = None,
        steps_runner: RunSteps = run_steps,
        probe: HealthProbe | None = None,
        stack: StackManager | None = None,
        exec_factory: Callable[[docker.DockerClient, str], ExecFn] = DockerExec,
    ):
        """Initialize orchestrator.

        Args:
            spec: Environment description.
            broker: Where endpoints are published.
            client: docker client. Connects from the environment if None.
            steps_runner: Runs the setup steps once endpoints are published.
            probe: Readiness probe.
            stack: Compose stack manager.
            exec_factory: Builds the in-container exec function for a container id.
        """
        self.spec = spec
        self.broker = broker
        self._client = client
        self.steps_runner = steps_runner
        self.probe = probe or HealthProbe()
        self.stack = stack or StackManager(spec.file, spec.identifier)
        self.exec_factory = exec_factory
        self.planner = PortBindingPlanner(spec.timeout)
        self.stage = ComposeStage.IDLE
        self.network: NetworkInfo | None = None
        self.bindings: dict[str, list[ServicePortBinding]] = {}

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker_client()
        return self._client

    def _enter(self, stage: ComposeStage) -> None:
        self.stage = stage
        log.debug("compose_stage", stage=stage.value)

    async def setup(self) -> dict[str, str]:
        """Run every stage in order.

        Returns:
            Environment variables published for the services.
        """
        spec = self.spec
        stack_definition = load_stack_definition(spec.file)

        if spec.init_system_environment:
            export_env_file(spec.init_system_environment, self.broker)

        self._enter(ComposeStage.RESOLVE_NETWORK)
        self.network = await asyncio.to_thread(NetworkResolver(self.client).resolve)

        self._enter(ComposeStage.START_STACK)
        await asyncio.to_thread(self.stack.up)

        self._enter(ComposeStage.PLAN_BINDINGS)
        self.bindings = self.planner.plan(stack_definition)

        self._enter(ComposeStage.RESOLVE_BINDINGS)
        containers = await asyncio.to_thread(self._resolve_bindings)

        self._enter(ComposeStage.PROBE_ALL)
        await self._probe_all(containers)

        self._enter(ComposeStage.PUBLISH_ENV)
        published = self._publish()

        self._enter(ComposeStage.RUN_STEPS)
        await self.steps_runner(spec.steps, spec.timeout, None)

        self._enter(ComposeStage.DONE)
        return published

    def _resolve_bindings(self) -> dict[str, object]:
        """Map every planned binding to its published port.

        Returns:
            The container of each service that has bindings.
        """
        assert self.network is not None
        containers = {}
        for service, bindings in self.bindings.items():
            container = find_container(self.client, self.stack.project, service)
            containers[service] = container
            for binding in bindings:
                self.planner.resolve(binding, container, self.network.gateway)
        return containers

    async def _probe_all(self, containers: dict[str, object]) -> None:
        """Probe every binding concurrently; the first failure cancels the rest."""
        try:
            async with asyncio.TaskGroup() as group:
                for service, bindings in self.bindings.items():
                    exec_fn = self.exec_factory(self.client, containers[service].id)
                    for binding in bindings:
                        group.create_task(
                            self.probe.probe(
                                binding.host_ip,
                                binding.published_port,
                                binding.container_port,
                                exec_fn,
                                self.planner.timeout,
                                service=service,
                            )
                        )
        except ExceptionGroup as group_error:
            raise _first_leaf(group_error) from None

    def _publish(self) -> dict[str, str]:
        for service, bindings in self.bindings.items():
            for binding in bindings:
                self.broker.publish(service_host_key(service), binding.host_ip, service)
                self.broker.publish(
                    service_port_key(service, binding.container_port),
                    binding.published_port,
                    service,
                )
        return self.broker.published

    def teardown(self) -> None:
        """Remove the stack and its volumes."""
        self.stack.down(remove_volumes=True)


def _first_leaf(error: BaseException) -> BaseException:
    while isinstance(error, BaseExceptionGroup):
        error = error.exceptions[0]
    return error
