"""Setup steps run after the environment is up.

A step may create manifests, run a shell command, and wait on cluster
conditions, in that order. Steps run one after another under a single
deadline.
"""

from __future__ import annotations

import asyncio
import glob
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import TYPE_CHECKING

from ..config import Step
from ..errors import SetupError, StepError, command_failure
from ..shared.logging import get_logger
from ..shared.processes import reap
from .waiter import ConditionWaiter

if TYPE_CHECKING:
    from .kind import ClusterHandle

log = get_logger(__name__)

RunSteps = Callable[[Iterable[Step] | None, int, "ClusterHandle | None"], Awaitable[None]]

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


def collect_manifests(path: str) -> list[Path]:
    """Expand a comma separated list of files, directories and globs.

    Directories contribute their manifest files in name order.
    """
    files: list[Path] = []
    for part in (p.strip() for p in path.split(",")):
        if not part:
            continue
        matches = sorted(glob.glob(part)) or [part]
        for match in matches:
            item = Path(match)
            if item.is_dir():
                files.extend(
                    sorted(f for f in item.iterdir() if f.suffix in MANIFEST_SUFFIXES)
                )
            elif item.is_file():
                files.append(item)
            else:
                raise StepError(message=f"manifest not found: {item}", data={"path": str(item)})
    return files


async def operate_manifest(cluster: ClusterHandle, path: Path, verb: str) -> None:
    """Apply a kubectl verb (create, apply, delete, ...) to a manifest file."""
    cmd = ["kubectl", "--kubeconfig", str(cluster.kubeconfig), verb, "-f", str(path)]
    log.info("manifest", verb=verb, path=str(path))
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise StepError(message="kubectl not found. Is kubectl installed?") from None
    try:
        _, stderr = await process.communicate()
    finally:
        await reap(process)
    if process.returncode != 0:
        raise command_failure(
            StepError,
            f"{verb} manifest {path}",
            process.returncode,
            stderr.decode(errors="replace"),
            path=str(path),
        )


async def run_command(command: str, step_name: str = "") -> None:
    """Run a shell command, streaming its output to the log."""
    log.info("step_command", step=step_name, command=command)
    process = await asyncio.create_subprocess_exec(
        "bash",
        "-ec",
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        start_new_session=True,
    )
    assert process.stdout is not None
    try:
        async for line in process.stdout:
            log.info("step_output", step=step_name, line=line.decode(errors="replace").rstrip())
        await process.wait()
    finally:
        # Background jobs of the command share its process group
        await reap(process, group=True)
    if process.returncode != 0:
        raise StepError(
            message=f"step {step_name!r} command failed (exit {process.returncode}): {command}",
            data={"step": step_name, "returncode": process.returncode},
        )


async def run_step(step: Step, timeout: int, cluster: ClusterHandle | None) -> None:
    if step.path:
        if cluster is None:
            raise StepError(
                message=f"step {step.name!r}: manifests can only be applied to a kind cluster",
                data={"step": step.name},
            )
        for manifest in collect_manifests(step.path):
            await operate_manifest(cluster, manifest, "create")

    if step.command:
        await run_command(step.command, step.name)

    if step.waits:
        kubeconfig = cluster.kubeconfig if cluster is not None else None
        await ConditionWaiter(kubeconfig, timeout).wait_all(step.waits)


async def run_steps(
    steps: Iterable[Step] | None, timeout: int, cluster: ClusterHandle | None
) -> None:
    """Run setup steps in order under one deadline.

    Args:
        steps: Steps to run. None or empty does nothing.
        timeout: Seconds for all steps together.
        cluster: Cluster handle, None for the compose backend.
    """
    steps = list(steps or [])
    if not steps:
        return
    try:
        async with asyncio.timeout(timeout):
            for index, step in enumerate(steps, start=1):
                log.info("step_started", step=step.name or index)
                try:
                    await run_step(step, timeout, cluster)
                except SetupError:
                    raise
                except OSError as e:
                    raise StepError(
                        message=f"step {step.name or index!r} failed: {e}",
                        data={"step": step.name},
                    ) from e
                log.info("step_finished", step=step.name or index)
    except TimeoutError:
        raise StepError(message=f"steps did not finish within {timeout}s") from None
