"""Error taxonomy for environment setup.

Every phase raises one of these with the identifying context (service,
port, resource) carried in ``data``. Nothing below the CLI logs-and-continues.
"""

from dataclasses import dataclass, field
from typing import Any

# Exit code a shell returns when the command cannot be executed
EXEC_NOT_EXECUTABLE = 126


@dataclass
class SetupError(Exception):
    """Base error class for setup errors."""

    message: str
    retryable: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message


@dataclass
class ConfigurationError(SetupError):
    """Invalid or missing configuration, raised before touching any resource."""


@dataclass
class ProvisioningError(SetupError):
    """Network, stack or cluster provisioning failed."""


@dataclass
class ResolutionError(SetupError):
    """A declared port could not be found on the live container, service or pod."""


@dataclass
class ReadinessError(SetupError):
    """Readiness probe failed in a way retrying cannot fix."""


@dataclass
class ReadinessTimeoutError(ReadinessError):
    """Readiness probe did not succeed before its deadline."""

    retryable: bool = True


@dataclass
class EnvironmentExportError(SetupError):
    """An environment variable could not be published."""


@dataclass
class WaitError(SetupError):
    """A wait condition was not met."""


@dataclass
class TunnelError(SetupError):
    """A port-forward tunnel could not be opened."""


@dataclass
class StepError(SetupError):
    """A setup step failed."""


def command_failure(
    error_cls: type[SetupError], action: str, returncode: int, stderr: str, **data: Any
) -> SetupError:
    """Build an error for a failed external command, keeping its stderr verbatim.

    Args:
        error_cls: SetupError subclass to instantiate
        action: Human readable description of what was attempted
        returncode: Exit code of the process
        stderr: Captured standard error
        **data: Extra identifying context

    Returns:
        Instance of error_cls
    """
    detail = stderr.strip()
    message = f"{action} failed (exit {returncode})"
    if detail:
        message = f"{message}: {detail}"
    return error_cls(message=message, data={"returncode": returncode, **data})
