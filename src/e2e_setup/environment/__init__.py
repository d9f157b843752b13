"""Environment module - disposable compose stacks and kind clusters.

Brings an environment up, probes it, publishes its endpoints as
environment variables and tears it down again.
"""

from .compose import ComposeOrchestrator, ComposeStage
from .driver import EnvironmentDriver, EnvironmentSession
from .exporter import EnvironmentVariableBroker, export_env_file, sanitize
from .health import HealthCheckOutcome, HealthProbe
from .kind import ClusterHandle, ClusterProvisioner
from .network import NetworkInfo, NetworkResolver
from .portforward import PortForwardContext, PortForwardSupervisor, PodTarget, ServiceTarget
from .ports import MalformedPortError, PortBindingPlanner, PortsFieldError, ServicePortBinding
from .steps import run_steps
from .waiter import ConditionWaiter

__all__ = [
    # Driver
    "EnvironmentDriver",
    "EnvironmentSession",
    # Compose backend
    "ComposeOrchestrator",
    "ComposeStage",
    "NetworkInfo",
    "NetworkResolver",
    "PortBindingPlanner",
    "ServicePortBinding",
    "PortsFieldError",
    "MalformedPortError",
    "HealthProbe",
    "HealthCheckOutcome",
    # Cluster backend
    "ClusterHandle",
    "ClusterProvisioner",
    "ConditionWaiter",
    "PortForwardContext",
    "PortForwardSupervisor",
    "ServiceTarget",
    "PodTarget",
    # Environment variables
    "EnvironmentVariableBroker",
    "export_env_file",
    "sanitize",
    # Steps
    "run_steps",
]
