"""Port-forward tunnels into the kind cluster.

Each exposed resource gets one ``kubectl port-forward`` worker. Port tokens
are resolved against the live Service or Pod first, so named ports and
service ports reach the right container port. All workers share one
PortForwardContext, which teardown uses to stop them and wait until every
one of them has exited.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Coroutine, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from kubernetes.client.rest import ApiException

from ..config import ExposePort
from ..errors import ResolutionError, TunnelError
from ..shared.logging import get_logger
from .exporter import EnvironmentVariableBroker, resource_host_key, resource_port_key

if TYPE_CHECKING:
    from .kind import ClusterHandle

log = get_logger(__name__)

FORWARD_HOST = "localhost"
TERMINATE_GRACE_SECONDS = 5.0

_FORWARDING_LINE = re.compile(r"Forwarding from .*:(\d+) -> (\d+)")
_READ_CHUNK = 64 * 1024

_POD_KINDS = {"pod", "pods", "po"}
_SERVICE_KINDS = {"service", "services", "svc"}
_WORKLOAD_READERS = {
    "deployment": "read_namespaced_deployment",
    "deployments": "read_namespaced_deployment",
    "deploy": "read_namespaced_deployment",
    "statefulset": "read_namespaced_stateful_set",
    "statefulsets": "read_namespaced_stateful_set",
    "sts": "read_namespaced_stateful_set",
    "replicaset": "read_namespaced_replica_set",
    "replicasets": "read_namespaced_replica_set",
    "rs": "read_namespaced_replica_set",
    "daemonset": "read_namespaced_daemon_set",
    "daemonsets": "read_namespaced_daemon_set",
    "ds": "read_namespaced_daemon_set",
}


# ── Resolution ──


@dataclass(frozen=True)
class ServiceTarget:
    """A Service and the pod its traffic would reach."""

    service: Any
    pod: Any


@dataclass(frozen=True)
class PodTarget:
    """A pod, given directly or picked from a workload's selector."""

    pod: Any


ResolveTarget = ServiceTarget | PodTarget


@dataclass(frozen=True)
class ForwardTarget:
    """One requested port, resolved."""

    input_port: str
    container_port: int
    expose: str


def split_resource(resource: str) -> tuple[str, str]:
    """Split ``kind/name`` into (kind, name); a bare name is a pod."""
    if "/" not in resource:
        return "pod", resource
    kind, name = resource.split("/", 1)
    return kind.lower(), name


def _selector_string(labels: dict[str, str] | None) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted((labels or {}).items()))


def first_pod_for_selector(cluster: ClusterHandle, namespace: str, labels: dict[str, str] | None):
    """Pick the pod a forward to a selector-backed object would use."""
    selector = _selector_string(labels)
    if not selector:
        raise ResolutionError(
            message=f"cannot select pods in {namespace!r}: object has no selector",
            data={"namespace": namespace},
        )
    pods = cluster.core_v1.list_namespaced_pod(namespace, label_selector=selector).items
    if not pods:
        raise ResolutionError(
            message=f"no pods in {namespace!r} match selector {selector!r}",
            data={"namespace": namespace, "selector": selector},
        )
    running = [p for p in pods if p.status and p.status.phase == "Running"]
    return (running or pods)[0]


def resolve_target(cluster: ClusterHandle, namespace: str, resource: str) -> ResolveTarget:
    """Look up the live object behind an exposed resource."""
    kind, name = split_resource(resource)
    try:
        if kind in _POD_KINDS:
            return PodTarget(cluster.core_v1.read_namespaced_pod(name, namespace))
        if kind in _SERVICE_KINDS:
            service = cluster.core_v1.read_namespaced_service(name, namespace)
            pod = first_pod_for_selector(cluster, namespace, service.spec.selector)
            return ServiceTarget(service, pod)
        if kind in _WORKLOAD_READERS:
            reader = getattr(cluster.apps_v1, _WORKLOAD_READERS[kind])
            workload = reader(name, namespace)
            labels = workload.spec.selector.match_labels if workload.spec.selector else None
            return PodTarget(first_pod_for_selector(cluster, namespace, labels))
    except ApiException as e:
        raise ResolutionError(
            message=f"could not find {resource!r} in namespace {namespace!r}: {e.reason}",
            data={"resource": resource, "namespace": namespace, "status": e.status},
        ) from e
    raise ResolutionError(
        message=f"cannot port-forward to resource kind {kind!r} ({resource!r})",
        data={"resource": resource},
    )


def lookup_container_port_by_name(pod, name: str) -> int:
    for container in pod.spec.containers or []:
        for port in container.ports or []:
            if port.name == name:
                return int(port.container_port)
    raise ResolutionError(
        message=f"pod {pod.metadata.name!r} does not have a named port {name!r}",
        data={"pod": pod.metadata.name, "port": name},
    )


def lookup_service_port_by_name(service, name: str) -> int:
    for port in service.spec.ports or []:
        if port.name == name:
            return int(port.port)
    raise ResolutionError(
        message=f"service {service.metadata.name!r} does not have a named port {name!r}",
        data={"service": service.metadata.name, "port": name},
    )


def lookup_container_port_by_service_port(service, pod, port: int) -> int:
    """Follow a service port through its targetPort to the container port."""
    if service.spec.cluster_ip == "None":
        return port
    for service_port in service.spec.ports or []:
        if int(service_port.port) != port:
            continue
        target = service_port.target_port
        if target is None or target == 0:
            return port
        if isinstance(target, int) or str(target).isdigit():
            return int(target)
        return lookup_container_port_by_name(pod, str(target))
    raise ResolutionError(
        message=f"service {service.metadata.name!r} does not have a service port {port}",
        data={"service": service.metadata.name, "port": port},
    )


def build_forward_target(token: str, target: ResolveTarget) -> ForwardTarget:
    """Resolve one port token (``8080``, ``http``, ``8080:9090``) against a target."""
    if ":" in token:
        local, remote = token.split(":", 1)
        expose = token
    else:
        local, remote = "", token
        expose = f":{token}"

    match target:
        case PodTarget(pod=pod):
            if remote.isdigit():
                container_port = int(remote)
            else:
                container_port = lookup_container_port_by_name(pod, remote)
        case ServiceTarget(service=service, pod=pod):
            if remote.isdigit():
                service_port = int(remote)
            else:
                service_port = lookup_service_port_by_name(service, remote)
            container_port = lookup_container_port_by_service_port(service, pod, service_port)

    if str(container_port) != remote:
        expose = f"{local}:{container_port}"
    return ForwardTarget(input_port=remote, container_port=container_port, expose=expose)


# ── Lifecycle ──


class ForwardState(Enum):
    """Lifecycle of the shared port-forward context."""

    IDLE = "idle"
    EXPOSING = "exposing"
    ACTIVE = "active"
    DRAINING = "draining"
    STOPPED = "stopped"


class PortForwardContext:
    """Shared lifecycle of all tunnels opened in one run.

    Owned by whoever called PortForwardSupervisor.expose(); teardown must
    call stop() before removing the cluster.
    """

    def __init__(self, capacity: int):
        """Initialize context.

        Args:
            capacity: Maximum number of tunnel workers.
        """
        self.capacity = capacity
        self.resource_count = 0
        self.state = ForwardState.IDLE
        self.stop_event = asyncio.Event()
        self.cancelled = asyncio.Event()
        self.finished: asyncio.Queue[None] = asyncio.Queue(maxsize=capacity)
        self.worker_errors: list[BaseException] = []
        self._tasks: list[asyncio.Task] = []

    @property
    def should_wait_signal(self) -> bool:
        """Whether tunnels are open and the process should stay alive."""
        return self.state == ForwardState.ACTIVE and self.resource_count > 0

    def spawn(self, worker: Coroutine[Any, Any, None]) -> asyncio.Task:
        """Start a tunnel worker. It acknowledges exactly once when it exits."""
        if self.resource_count >= self.capacity:
            worker.close()
            raise TunnelError(message=f"port-forward context is full ({self.capacity} tunnels)")

        self.resource_count += 1
        task = asyncio.create_task(worker)
        task.add_done_callback(self._acknowledge)
        self._tasks.append(task)
        return task

    def _acknowledge(self, task: asyncio.Task) -> None:
        # Runs for tasks cancelled before their first step too.
        if not task.cancelled() and task.exception() is not None:
            self.worker_errors.append(task.exception())
        self.finished.put_nowait(None)

    async def _drain(self) -> None:
        self.state = ForwardState.DRAINING
        for _ in range(self.resource_count):
            await self.finished.get()
        self.state = ForwardState.STOPPED
        log.info("port_forward_drained", tunnels=self.resource_count)

    async def stop(self) -> None:
        """Signal every tunnel to stop and wait until all have exited."""
        if self.state == ForwardState.STOPPED:
            return
        self.stop_event.set()
        await self._drain()

    async def abort(self) -> None:
        """Cancel tunnels, including ones still starting, and wait for them."""
        if self.state == ForwardState.STOPPED:
            return
        self.cancelled.set()
        self.stop_event.set()
        for task in self._tasks:
            task.cancel()
        await self._drain()


class TunnelWorker:
    """One ``kubectl port-forward`` process."""

    def __init__(
        self,
        cluster: ClusterHandle,
        namespace: str,
        pod_name: str,
        targets: list[ForwardTarget],
        context: PortForwardContext,
    ):
        self.cluster = cluster
        self.namespace = namespace
        self.pod_name = pod_name
        self.targets = targets
        self.context = context

    def build_command(self) -> list[str]:
        return [
            "kubectl",
            "--kubeconfig",
            str(self.cluster.kubeconfig),
            "-n",
            self.namespace,
            "port-forward",
            f"pod/{self.pod_name}",
            *(t.expose for t in self.targets),
        ]

    async def run(self, ready: asyncio.Future) -> None:
        """Open the tunnel, report readiness, hold until stopped."""
        process = None
        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *self.build_command(),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError:
                raise TunnelError(message="kubectl not found. Is kubectl installed?") from None
            forwarded = await self._wait_forwarding(process)
            if ready.done():
                return
            ready.set_result(forwarded)
            await self._hold(process)
        except Exception as e:
            if ready.done():
                raise
            if not isinstance(e, TunnelError):
                e = TunnelError(
                    message=f"create forward to pod {self.pod_name!r} error: {e}",
                    data={"pod": self.pod_name},
                )
            ready.set_exception(e)
        finally:
            if not ready.done():
                ready.set_exception(
                    TunnelError(message=f"forward to pod {self.pod_name!r} stopped before ready")
                )
            if process is not None:
                await self._terminate(process)

    async def _wait_forwarding(self, process: asyncio.subprocess.Process) -> dict[int, int]:
        """Read kubectl output until every remote port is forwarded.

        Returns:
            Mapping of remote (container) port to local port.
        """
        expected = {t.container_port for t in self.targets}
        forwarded: dict[int, int] = {}
        assert process.stdout is not None
        async for raw in process.stdout:
            match = _FORWARDING_LINE.search(raw.decode(errors="replace"))
            if not match:
                continue
            local, remote = int(match.group(1)), int(match.group(2))
            forwarded.setdefault(remote, local)
            if expected <= forwarded.keys():
                return forwarded

        stderr = b""
        if process.stderr is not None:
            stderr = await process.stderr.read()
        detail = stderr.decode(errors="replace").strip()
        raise TunnelError(
            message=f"create forward error to pod {self.pod_name!r}: {detail}",
            data={"pod": self.pod_name, "namespace": self.namespace},
        )

    async def _hold(self, process: asyncio.subprocess.Process) -> None:
        """Keep both pipes empty until stopped, so kubectl never blocks on a write."""
        assert process.stdout is not None and process.stderr is not None
        stdout, stderr = process.stdout, process.stderr

        async def _discard() -> None:
            while await stdout.read(_READ_CHUNK):
                pass

        async def _log_errors() -> None:
            while True:
                chunk = await stderr.read(_READ_CHUNK)
                if not chunk:
                    return
                log.debug(
                    "tunnel_stderr",
                    pod=self.pod_name,
                    output=chunk.decode(errors="replace").strip(),
                )

        drains = [asyncio.create_task(_discard()), asyncio.create_task(_log_errors())]
        stop = asyncio.create_task(self.context.stop_event.wait())
        exited = asyncio.create_task(process.wait())
        try:
            await asyncio.wait({stop, exited}, return_when=asyncio.FIRST_COMPLETED)
            if exited.done() and not stop.done():
                log.warning("tunnel_exited", pod=self.pod_name, returncode=process.returncode)
        finally:
            for task in (*drains, stop, exited):
                task.cancel()

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), TERMINATE_GRACE_SECONDS)
        except TimeoutError:
            process.kill()
            await process.wait()


class PortForwardSupervisor:
    """Resolve and open every declared port exposure."""

    def __init__(self, cluster: ClusterHandle, broker: EnvironmentVariableBroker, timeout: int):
        """Initialize supervisor.

        Args:
            cluster: Connected cluster.
            broker: Where local endpoints are published.
            timeout: Seconds each tunnel may take to become ready.
        """
        self.cluster = cluster
        self.broker = broker
        self.timeout = timeout

    async def expose(self, exposes: Iterable[ExposePort]) -> PortForwardContext:
        """Open a tunnel per exposure and publish its endpoints.

        Returns:
            The context teardown must stop. On error every tunnel opened so
            far has already been stopped.
        """
        exposes = list(exposes)
        context = PortForwardContext(capacity=len(exposes))
        context.state = ForwardState.EXPOSING
        try:
            for expose in exposes:
                await self._expose_one(expose, context)
        except BaseException:
            await context.abort()
            raise
        context.state = ForwardState.ACTIVE
        return context

    async def _expose_one(self, expose: ExposePort, context: PortForwardContext) -> None:
        target = await asyncio.to_thread(
            resolve_target, self.cluster, expose.namespace, expose.resource
        )
        targets = [build_forward_target(token, target) for token in expose.tokens]
        if not targets:
            raise TunnelError(
                message=f"no ports to expose for {expose.resource!r}",
                data={"resource": expose.resource},
            )

        worker = TunnelWorker(
            self.cluster, expose.namespace, target.pod.metadata.name, targets, context
        )
        ready: asyncio.Future[dict[int, int]] = asyncio.get_running_loop().create_future()
        context.spawn(worker.run(ready))
        try:
            async with asyncio.timeout(self.timeout):
                forwarded = await ready
        except TimeoutError:
            raise TunnelError(
                message=f"forward to {expose.resource!r} not ready within {self.timeout}s",
                data={"resource": expose.resource},
            ) from None

        log.info("port_forward_ready", resource=expose.resource, ports=forwarded)
        self.broker.publish(resource_host_key(expose.resource), FORWARD_HOST, expose.resource)
        for t in targets:
            self.broker.publish(
                resource_port_key(expose.resource, t.input_port),
                forwarded[t.container_port],
                expose.resource,
            )
