"""Pick the backend for an environment and own what it leaves running."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..config import Backend, EnvironmentSpec
from ..shared.logging import bind_run, get_logger
from .compose import ComposeOrchestrator
from .exporter import EnvironmentVariableBroker
from .kind import ClusterHandle, ClusterProvisioner
from .portforward import PortForwardContext
from .steps import RunSteps, run_steps

log = get_logger(__name__)


@dataclass
class EnvironmentSession:
    """A running environment."""

    backend: Backend
    env: dict[str, str] = field(default_factory=dict)
    cluster: ClusterHandle | None = None
    forward: PortForwardContext | None = None

    @property
    def should_wait_signal(self) -> bool:
        """Whether open tunnels need the process to stay alive."""
        return self.forward is not None and self.forward.should_wait_signal


class EnvironmentDriver:
    """Set up and tear down the environment an EnvironmentSpec describes."""

    def __init__(
        self,
        spec: EnvironmentSpec,
        broker: EnvironmentVariableBroker | None = None,
        steps_runner: RunSteps = run_steps,
        compose: ComposeOrchestrator | None = None,
        provisioner: ClusterProvisioner | None = None,
    ):
        self.spec = spec
        self.broker = broker or EnvironmentVariableBroker()
        self.steps_runner = steps_runner
        self._compose = compose
        self._provisioner = provisioner

    @property
    def compose(self) -> ComposeOrchestrator:
        if self._compose is None:
            self._compose = ComposeOrchestrator(
                self.spec, self.broker, steps_runner=self.steps_runner
            )
        return self._compose

    @property
    def provisioner(self) -> ClusterProvisioner:
        if self._provisioner is None:
            self._provisioner = ClusterProvisioner(
                self.spec, self.broker, steps_runner=self.steps_runner
            )
        return self._provisioner

    async def setup(self) -> EnvironmentSession:
        """Bring the environment up.

        Returns:
            EnvironmentSession to pass to teardown().
        """
        bind_run(self.spec.identifier, self.spec.backend.value)
        log.info("setup_started", file=str(self.spec.file))
        session = EnvironmentSession(backend=self.spec.backend)
        if self.spec.backend == Backend.COMPOSE:
            await self.compose.setup()
        else:
            result = await self.provisioner.setup()
            session.cluster = result.cluster
            session.forward = result.forward
        session.env = self.broker.published
        log.info("setup_finished", exported=len(session.env))
        return session

    async def teardown(self, session: EnvironmentSession | None = None) -> None:
        """Stop tunnels, then remove the stack or cluster.

        Args:
            session: Session returned by setup(). None tears down by
                configuration alone, for a separate cleanup run.
        """
        bind_run(self.spec.identifier, self.spec.backend.value)
        if session is not None and session.forward is not None:
            await session.forward.stop()
        log.info("teardown_started")
        if self.spec.backend == Backend.COMPOSE:
            self.compose.teardown()
        else:
            self.provisioner.teardown()
        log.info("teardown_finished")
