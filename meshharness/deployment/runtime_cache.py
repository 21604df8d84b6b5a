"""Runtime queries against a running environment, with caching.

Concurrent test threads share one environment, so two answers are cached
for the life of the environment:

- the ingress address, discovered once; a failed discovery is remembered
  and re-raised to every later caller
- the app pod index, queried lazily and refreshed until it is non-empty
"""

from __future__ import annotations

import copy
import threading
import time
from collections.abc import Callable
from typing import Generic, TypeVar

from loguru import logger

from meshharness.deployment.errors import HarnessError, IngressError
from meshharness.infra.constants import DEFAULT_CONSTANTS, HarnessConstants
from meshharness.infra.k8s import KubernetesControllerSync, KubernetesError

AppPodIndex = dict[str, list[str]]

T = TypeVar("T")


class LatchedValue(Generic[T]):
    """A value computed at most once, shared by every caller.

    The first caller runs the resolver while holding the lock; concurrent
    callers block until it finishes. Whatever the resolver produced, value
    or exception, is handed to every later caller. The same exception
    instance is re-raised each time.
    """

    def __init__(self, resolver: Callable[[], T]) -> None:
        self._resolver = resolver
        self._lock = threading.Lock()
        self._resolved = False
        self._value: T | None = None
        self._error: Exception | None = None

    @property
    def resolved(self) -> bool:
        with self._lock:
            return self._resolved

    def get(self) -> T:
        with self._lock:
            if not self._resolved:
                try:
                    self._value = self._resolver()
                except Exception as e:
                    self._error = e
                self._resolved = True

            if self._error is not None:
                raise self._error
            return self._value  # type: ignore[return-value]


class AppPodCache:
    """Index of `app` label values to pod names in the test namespace.

    An empty or failed answer is never cached, so the index is retried
    until pods exist. Callers always receive their own copy.
    """

    def __init__(self, client: KubernetesControllerSync, namespace: str) -> None:
        self.client = client
        self.namespace = namespace
        self._lock = threading.Lock()
        self._pods: AppPodIndex = {}

    def get(self) -> AppPodIndex:
        with self._lock:
            if not self._pods:
                try:
                    pods = self.client.get_app_pods(self.namespace)
                except KubernetesError as e:
                    logger.error(f"Failed to get app pods in {self.namespace}: {e}")
                    return {}
                self._pods = copy.deepcopy(pods)
            return copy.deepcopy(self._pods)

    def invalidate(self) -> None:
        with self._lock:
            self._pods = {}


# =============================================================================
# Ingress discovery
# =============================================================================


def discover_local_ingress(
    client: KubernetesControllerSync,
    namespace: str,
    constants: HarnessConstants = DEFAULT_CONSTANTS,
) -> str:
    """Ingress address on a local cluster: node IP plus the port-80 node port.

    Raises:
        IngressError: If the pod, service or node port cannot be found
    """
    pods = client.get_pods(namespace, constants.INGRESS_POD_LABEL)
    host_ip = next((p.host_ip for p in pods if p.host_ip), "")
    if not host_ip:
        raise IngressError(f"No ingress pod with a host IP in {namespace}")

    service = _ingress_service(client, namespace, constants)
    if service is None:
        raise IngressError(f"Service {constants.INGRESS_SERVICE_NAME} not found in {namespace}")

    node_port = service.node_ports.get(80)
    if not node_port:
        raise IngressError(
            f"Service {constants.INGRESS_SERVICE_NAME} has no node port for port 80"
        )
    return f"http://{host_ip}:{node_port}"


def discover_remote_ingress(
    client: KubernetesControllerSync,
    namespace: str,
    constants: HarnessConstants = DEFAULT_CONSTANTS,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """Ingress address on a cloud cluster: the load balancer's external address.

    Polls the ingress service until the load balancer is provisioned.

    Raises:
        IngressError: If no address appears before the timeout
    """
    deadline = clock() + constants.INGRESS_WAIT_TIMEOUT
    while True:
        service = _ingress_service(client, namespace, constants)
        if service is not None and service.external_ip:
            return f"http://{service.external_ip}"

        if clock() >= deadline:
            raise IngressError(
                f"Ingress {constants.INGRESS_SERVICE_NAME} has no external address "
                f"after {constants.INGRESS_WAIT_TIMEOUT:.0f}s"
            )
        logger.debug("Waiting for the ingress load balancer")
        sleep(constants.INGRESS_POLL_INTERVAL)


def _ingress_service(client, namespace, constants):  # type: ignore[no-untyped-def]
    for service in client.get_services(namespace):
        if service.name == constants.INGRESS_SERVICE_NAME:
            return service
    return None


# =============================================================================
# Cache
# =============================================================================


class RuntimeQueryCache:
    """Cached runtime queries for one environment."""

    def __init__(
        self,
        client: KubernetesControllerSync,
        *,
        namespace: str,
        system_namespace: str,
        local_cluster: bool,
        constants: HarnessConstants | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.namespace = namespace
        self.system_namespace = system_namespace
        self.local_cluster = local_cluster
        self.constants = constants or DEFAULT_CONSTANTS
        self._sleep = sleep
        self._clock = clock
        self._ingress: LatchedValue[str] = LatchedValue(self._discover_ingress)
        self.app_pods = AppPodCache(client, namespace)

    def ingress(self) -> str:
        """Get the ingress URL, discovering it on first use.

        Raises:
            IngressError: The first discovery failure, for every caller
        """
        return self._ingress.get()

    def get_app_pods(self) -> AppPodIndex:
        return self.app_pods.get()

    def get_routes(self, app: str) -> str:
        """Dump the proxy route table from the first pod of an app.

        Raises:
            HarnessError: If the app has no pods or the exec fails
        """
        pods = self.app_pods.get().get(app)
        if not pods:
            raise HarnessError(f"Missing pod names for app {app!r}")

        result = self.client.exec_in_pod(
            self.namespace,
            pods[0],
            ["client", "-url", self.constants.PROXY_ROUTES_URL],
            container="app",
        )
        if not result.success:
            raise HarnessError(
                f"Failed to get routes from {pods[0]}: {result.stderr.strip()}"
            )
        return result.stdout

    def _discover_ingress(self) -> str:
        if self.local_cluster:
            address = discover_local_ingress(
                self.client, self.system_namespace, self.constants
            )
        else:
            address = discover_remote_ingress(
                self.client,
                self.system_namespace,
                self.constants,
                sleep=self._sleep,
                clock=self._clock,
            )
        logger.info(f"Ingress IP: {address}")
        return address
