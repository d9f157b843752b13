"""Compose stack lifecycle.

Starts and removes the stack with the docker compose CLI under a fixed
project name, so containers can be found again by their compose labels.
"""

from __future__ import annotations

import re
import subprocess
from pathlib import Path

from ..errors import ProvisioningError, command_failure
from ..shared.logging import get_logger

log = get_logger(__name__)

_PROJECT_INVALID = re.compile(r"[^a-z0-9_-]")


def compose_project_name(identifier: str) -> str:
    """Normalize an identifier the way docker compose normalizes project names."""
    return _PROJECT_INVALID.sub("", identifier.lower()) or "e2e"


class StackManager:
    """Manage a docker compose stack."""

    def __init__(self, compose_file: Path, project: str):
        """Initialize stack manager.

        Args:
            compose_file: Path to the compose file.
            project: Compose project name.
        """
        self.compose_file = compose_file
        self.compose_dir = compose_file.parent
        self.project = compose_project_name(project)

    def _compose_cmd(self) -> list[str]:
        """Build base docker compose command."""
        return ["docker", "compose", "-p", self.project, "-f", str(self.compose_file)]

    def _run(self, args: list[str], action: str) -> None:
        cmd = self._compose_cmd() + args
        log.debug("compose_command", command=" ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                cwd=self.compose_dir,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError:
            raise ProvisioningError(message="Docker not found. Is Docker installed?") from None

        if result.returncode != 0:
            raise command_failure(
                ProvisioningError,
                action,
                result.returncode,
                result.stderr,
                project=self.project,
            )

    def up(self) -> None:
        """Start the stack detached."""
        log.info("stack_up", project=self.project, file=str(self.compose_file))
        self._run(["up", "-d"], f"starting compose stack {self.project!r}")

    def down(self, remove_volumes: bool = True) -> None:
        """Remove the stack.

        Args:
            remove_volumes: Whether to remove volumes.
        """
        args = ["down"]
        if remove_volumes:
            args.append("-v")
        log.info("stack_down", project=self.project)
        self._run(args, f"removing compose stack {self.project!r}")
