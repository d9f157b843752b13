"""Concurrent wait conditions on cluster resources.

Each condition runs its own ``kubectl wait``; all of them run at once and
the first failure is reported after every waiter has finished.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from pathlib import Path

from ..config import WaitCondition
from ..errors import ConfigurationError, WaitError
from ..shared.logging import get_logger
from ..shared.processes import reap

log = get_logger(__name__)


def validate_condition(condition: WaitCondition) -> None:
    """Reject conditions kubectl would misinterpret.

    Raises:
        ConfigurationError: Missing resource or condition, or a kind/name
            resource combined with a label selector.
    """
    if not condition.resource:
        raise ConfigurationError(
            message="resource must be provided in wait block", data={"wait": condition}
        )
    if not condition.for_condition:
        raise ConfigurationError(
            message=f"wait on {condition.resource!r} has no condition", data={"wait": condition}
        )
    if condition.names_single_resource and condition.label_selector:
        raise ConfigurationError(
            message=(
                "when passing resource.group/resource.name in resource, "
                "the label selector can not be set at the same time"
            ),
            data={"wait": condition},
        )


class ConditionWaiter:
    """Wait on many resource conditions concurrently."""

    def __init__(self, kubeconfig: Path | None, default_timeout: int):
        """Initialize waiter.

        Args:
            kubeconfig: Kubeconfig of the cluster. Uses kubectl's default if None.
            default_timeout: Seconds per condition unless it declares its own.
        """
        self.kubeconfig = kubeconfig
        self.default_timeout = default_timeout

    def _kubectl_cmd(self) -> list[str]:
        cmd = ["kubectl"]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", str(self.kubeconfig)])
        return cmd

    def build_command(self, condition: WaitCondition) -> list[str]:
        """Build the kubectl wait invocation for a condition."""
        timeout = condition.timeout or self.default_timeout
        cmd = self._kubectl_cmd() + [
            "-n",
            condition.namespace,
            "wait",
            f"--for={condition.for_condition}",
            f"--timeout={timeout}s",
            condition.resource,
        ]
        if condition.label_selector:
            cmd.extend(["-l", condition.label_selector])
        elif not condition.names_single_resource:
            cmd.append("--all")
        return cmd

    async def wait(self, condition: WaitCondition) -> None:
        """Block until one condition is met."""
        cmd = self.build_command(condition)
        log.info(
            "wait_started",
            resource=condition.resource,
            namespace=condition.namespace,
            condition=condition.for_condition,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise WaitError(message="kubectl not found. Is kubectl installed?") from None
        except OSError as e:
            raise WaitError(
                message=f"could not start kubectl wait on {condition.resource!r}: {e}",
                data={"wait": condition},
            ) from e

        try:
            _, stderr = await process.communicate()
        finally:
            await reap(process)
        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            raise WaitError(
                message=(
                    f"wait strategy {condition.resource!r} in {condition.namespace!r} "
                    f"for {condition.for_condition!r} failed: {detail}"
                ),
                data={"wait": condition, "returncode": process.returncode},
            )
        log.info("wait_condition_met", resource=condition.resource, namespace=condition.namespace)

    async def wait_all(self, conditions: Iterable[WaitCondition]) -> None:
        """Wait on every condition, reporting the first failure.

        All conditions are validated before any waiter starts. A failing
        waiter does not stop the others.
        """
        conditions = list(conditions)
        for condition in conditions:
            validate_condition(condition)
        if not conditions:
            return

        errors: list[Exception] = []

        async def _run(condition: WaitCondition) -> None:
            try:
                await self.wait(condition)
            except WaitError as e:
                errors.append(e)
            except Exception as e:
                error = WaitError(
                    message=f"wait on {condition.resource!r} failed: {e}",
                    data={"wait": condition},
                )
                error.__cause__ = e
                errors.append(error)

        await asyncio.gather(*(_run(c) for c in conditions))
        if errors:
            raise errors[0]
