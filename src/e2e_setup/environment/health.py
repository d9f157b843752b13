"""Readiness probing for compose services.

A port is ready once it accepts a TCP connection from the host on its
published port and a listener is visible from inside the container.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum

import docker
import docker.errors

from ..errors import EXEC_NOT_EXECUTABLE, ReadinessError, ReadinessTimeoutError
from ..shared.logging import get_logger

log = get_logger(__name__)

ExecFn = Callable[[list[str]], Awaitable[int]]

DEFAULT_DIAL_INTERVAL = 2.0
DEFAULT_EXEC_POLL_INTERVAL = 0.1
# Reported when docker records no exit code for a finished exec
UNKNOWN_EXIT_CODE = -1


class HealthCheckOutcome(Enum):
    """Result of one probe attempt."""

    READY = "ready"
    RETRY = "retry"
    FATAL = "fatal"

    @classmethod
    def from_exit_code(cls, exit_code: int) -> HealthCheckOutcome:
        if exit_code == 0:
            return cls.READY
        if exit_code == EXEC_NOT_EXECUTABLE:
            return cls.FATAL
        return cls.RETRY


def build_internal_check_command(port: int) -> str:
    """Shell snippet that succeeds if anything listens on port inside the container."""
    return (
        "true && ("
        f"cat /proc/net/tcp* | awk '{{print $2}}' | grep -i :{port:04x} || "
        f"nc -vz -w 1 localhost {port} || "
        f"/bin/sh -c '</dev/tcp/localhost/{port}'"
        ")"
    )


class DockerExec:
    """Run commands inside a container and report their exit code."""

    def __init__(self, client: docker.DockerClient, container_id: str, poll_interval: float = 0.1):
        self.client = client
        self.container_id = container_id
        self.poll_interval = poll_interval

    def run(self, cmd: list[str]) -> int:
        """Execute cmd and block until it exits."""
        api = self.client.api
        exec_id = api.exec_create(self.container_id, cmd, stdout=True, stderr=True)["Id"]
        api.exec_start(exec_id, detach=False)
        while True:
            state = api.exec_inspect(exec_id)
            if not state.get("Running"):
                exit_code = state.get("ExitCode")
                # No exit code recorded is not a success
                return UNKNOWN_EXIT_CODE if exit_code is None else int(exit_code)
            time.sleep(self.poll_interval)

    async def __call__(self, cmd: list[str]) -> int:
        return await asyncio.to_thread(self.run, cmd)


class HealthProbe:
    """Dual-path readiness check for one (service, port) pair."""

    def __init__(
        self,
        interval_seconds: float = DEFAULT_DIAL_INTERVAL,
        connect_timeout_seconds: float = 5.0,
    ):
        """Initialize health probe.

        Args:
            interval_seconds: Seconds between external dial attempts.
            connect_timeout_seconds: Timeout of a single dial attempt.
        """
        self.interval_seconds = interval_seconds
        self.connect_timeout_seconds = connect_timeout_seconds

    async def probe(
        self,
        host: str,
        published_port: int,
        container_port: int,
        exec_fn: ExecFn,
        timeout: float,
        service: str = "",
    ) -> None:
        """Wait until both gates pass.

        Args:
            host: Address the published port is reachable on.
            published_port: Host side port.
            container_port: Port inside the container.
            exec_fn: Runs a command in the container and returns its exit code.
            timeout: Seconds before giving up.
            service: Service name, for error context.

        Raises:
            ReadinessError: The container cannot run the internal check.
            ReadinessTimeoutError: The gates did not pass in time.
        """
        try:
            async with asyncio.timeout(timeout):
                await self.wait_external(host, published_port)
                await self.wait_internal(container_port, exec_fn, service)
        except TimeoutError:
            raise ReadinessTimeoutError(
                message=(
                    f"service {service!r} port {container_port} "
                    f"({host}:{published_port}) not ready within {timeout}s"
                ),
                data={"service": service, "port": container_port},
            ) from None

    async def wait_external(self, host: str, port: int) -> None:
        """Retry TCP connects until one succeeds."""
        while True:
            log.debug("dial", host=host, port=port)
            try:
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection(host, port), self.connect_timeout_seconds
                )
            except (OSError, TimeoutError) as e:
                log.debug("dial_failed", host=host, port=port, error=str(e))
                await asyncio.sleep(self.interval_seconds)
                continue
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
            log.info("dial_succeeded", host=host, port=port)
            return

    async def wait_internal(self, port: int, exec_fn: ExecFn, service: str = "") -> None:
        """Re-run the in-container check until it reports ready."""
        command = ["/bin/sh", "-c", build_internal_check_command(port)]
        while True:
            try:
                exit_code = await exec_fn(command)
            except docker.errors.APIError as e:
                raise ReadinessError(
                    message=f"internal port check of service {service!r} port {port} failed: {e}",
                    data={"service": service, "port": port},
                ) from e

            outcome = HealthCheckOutcome.from_exit_code(exit_code)
            if outcome is HealthCheckOutcome.READY:
                log.info("internal_port_ready", service=service, port=port)
                return
            if outcome is HealthCheckOutcome.FATAL:
                raise ReadinessError(
                    message=f"/bin/sh command not executable in service {service!r}",
                    data={"service": service, "port": port, "exit_code": exit_code},
                )
            # no backoff: the exec round-trip is the retry period
            await asyncio.sleep(0)
