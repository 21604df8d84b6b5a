"""Unit tests for cached runtime queries."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from meshharness.deployment.errors import HarnessError, IngressError
from meshharness.deployment.runtime_cache import (
    AppPodCache,
    LatchedValue,
    RuntimeQueryCache,
    discover_local_ingress,
    discover_remote_ingress,
)
from meshharness.infra.k8s import CommandResult, KubernetesError, PodInfo, ServiceInfo

CALLERS = 16


def ingress_service(external_ip: str = "", node_ports: dict[int, int] | None = None) -> ServiceInfo:
    return ServiceInfo(
        name="istio-ingress",
        type="LoadBalancer",
        cluster_ip="10.96.0.10",
        external_ip=external_ip,
        node_ports=node_ports or {},
    )


class TestLatchedValue:
    """Tests for the resolve-once value box."""

    def test_concurrent_callers_share_one_resolution(self) -> None:
        calls = []
        lock = threading.Lock()

        def resolve() -> str:
            with lock:
                calls.append(1)
            time.sleep(0.05)
            return "http://10.0.0.1"

        latch = LatchedValue(resolve)
        with ThreadPoolExecutor(max_workers=CALLERS) as pool:
            results = list(pool.map(lambda _: latch.get(), range(CALLERS)))

        assert len(calls) == 1
        assert results == ["http://10.0.0.1"] * CALLERS

    def test_concurrent_callers_share_one_error(self) -> None:
        calls = []

        def resolve() -> str:
            calls.append(1)
            time.sleep(0.05)
            raise IngressError("no ingress")

        latch = LatchedValue(resolve)
        with ThreadPoolExecutor(max_workers=CALLERS) as pool:
            futures = [pool.submit(latch.get) for _ in range(CALLERS)]
            errors = [f.exception() for f in futures]

        assert len(calls) == 1
        assert isinstance(errors[0], IngressError)
        assert all(e is errors[0] for e in errors)

    def test_error_is_latched(self) -> None:
        resolver = MagicMock(side_effect=[IngressError("first"), "late value"])
        latch = LatchedValue(resolver)

        with pytest.raises(IngressError, match="first"):
            latch.get()
        with pytest.raises(IngressError, match="first"):
            latch.get()

        assert resolver.call_count == 1
        assert latch.resolved is True

    def test_unresolved_until_first_get(self) -> None:
        resolver = MagicMock(return_value="v")
        latch = LatchedValue(resolver)

        assert latch.resolved is False
        resolver.assert_not_called()
        assert latch.get() == "v"
        assert latch.get() == "v"
        resolver.assert_called_once()


class TestAppPodCache:
    """Tests for the app pod index cache."""

    def test_result_is_cached_and_copied(self) -> None:
        client = MagicMock()
        client.get_app_pods.return_value = {"a": ["a-1"], "b": ["b-1", "b-2"]}
        cache = AppPodCache(client, "t1")

        first = cache.get()
        first["a"].append("intruder")
        first["c"] = ["c-1"]
        second = cache.get()

        assert second == {"a": ["a-1"], "b": ["b-1", "b-2"]}
        client.get_app_pods.assert_called_once_with("t1")

    def test_live_answer_is_not_aliased(self) -> None:
        live = {"a": ["a-1"]}
        client = MagicMock()
        client.get_app_pods.return_value = live
        cache = AppPodCache(client, "t1")

        cache.get()
        live["a"].append("a-2")

        assert cache.get() == {"a": ["a-1"]}

    def test_failure_is_not_cached(self) -> None:
        client = MagicMock()
        client.get_app_pods.side_effect = [KubernetesError("forbidden"), {"a": ["a-1"]}]
        cache = AppPodCache(client, "t1")

        assert cache.get() == {}
        assert cache.get() == {"a": ["a-1"]}
        assert client.get_app_pods.call_count == 2

    def test_empty_answer_is_retried(self) -> None:
        client = MagicMock()
        client.get_app_pods.side_effect = [{}, {"a": ["a-1"]}]
        cache = AppPodCache(client, "t1")

        assert cache.get() == {}
        assert cache.get() == {"a": ["a-1"]}

    def test_concurrent_callers_query_once(self) -> None:
        calls = []

        def query(namespace: str) -> dict[str, list[str]]:
            calls.append(namespace)
            time.sleep(0.05)
            return {"a": ["a-1"]}

        client = MagicMock()
        client.get_app_pods.side_effect = query
        cache = AppPodCache(client, "t1")

        with ThreadPoolExecutor(max_workers=CALLERS) as pool:
            results = list(pool.map(lambda _: cache.get(), range(CALLERS)))

        assert calls == ["t1"]
        assert all(r == {"a": ["a-1"]} for r in results)
        assert len({id(r) for r in results}) == CALLERS


class TestIngressDiscovery:
    """Tests for local and remote ingress discovery."""

    def test_local_uses_host_ip_and_node_port(self) -> None:
        client = MagicMock()
        client.get_pods.return_value = [
            PodInfo("istio-ingress-1", "Running", host_ip="192.168.99.100")
        ]
        client.get_services.return_value = [
            ingress_service(node_ports={80: 31380, 443: 31390})
        ]

        address = discover_local_ingress(client, "t1")

        assert address == "http://192.168.99.100:31380"
        client.get_pods.assert_called_once_with("t1", "istio=ingress")

    def test_local_without_pod_raises(self) -> None:
        client = MagicMock()
        client.get_pods.return_value = []

        with pytest.raises(IngressError):
            discover_local_ingress(client, "t1")

    def test_local_without_node_port_raises(self) -> None:
        client = MagicMock()
        client.get_pods.return_value = [PodInfo("ingress", "Running", host_ip="10.0.0.5")]
        client.get_services.return_value = [ingress_service(node_ports={443: 31390})]

        with pytest.raises(IngressError, match="port 80"):
            discover_local_ingress(client, "t1")

    def test_remote_waits_for_load_balancer(self) -> None:
        client = MagicMock()
        client.get_services.side_effect = [
            [ingress_service()],
            [ingress_service(external_ip="35.1.2.3")],
        ]
        sleeps: list[float] = []

        address = discover_remote_ingress(client, "t1", sleep=sleeps.append)

        assert address == "http://35.1.2.3"
        assert sleeps == [5.0]

    def test_remote_times_out(self) -> None:
        client = MagicMock()
        client.get_services.return_value = [ingress_service()]
        now = [0.0]

        def sleep(seconds: float) -> None:
            now[0] += seconds

        with pytest.raises(IngressError, match="no external address"):
            discover_remote_ingress(client, "t1", sleep=sleep, clock=lambda: now[0])

        assert now[0] == pytest.approx(300.0)


class TestRuntimeQueryCache:
    """Tests for the environment-level query cache."""

    @pytest.fixture
    def client(self) -> MagicMock:
        client = MagicMock()
        client.get_app_pods.return_value = {"productpage": ["productpage-1", "productpage-2"]}
        return client

    def test_ingress_discovered_once_in_system_namespace(self, client: MagicMock) -> None:
        client.get_services.return_value = [ingress_service(external_ip="35.1.2.3")]
        cache = RuntimeQueryCache(
            client, namespace="t1", system_namespace="istio-system", local_cluster=False
        )

        assert cache.ingress() == "http://35.1.2.3"
        assert cache.ingress() == "http://35.1.2.3"
        client.get_services.assert_called_once_with("istio-system")

    def test_concurrent_ingress_callers_discover_once(self, client: MagicMock) -> None:
        calls = []
        lock = threading.Lock()

        def get_services(namespace: str) -> list[ServiceInfo]:
            with lock:
                calls.append(namespace)
            time.sleep(0.05)
            return [ingress_service(external_ip="35.1.2.3")]

        client.get_services.side_effect = get_services
        cache = RuntimeQueryCache(
            client, namespace="t1", system_namespace="istio-system", local_cluster=False
        )
        start = threading.Barrier(CALLERS)

        def call(_: int) -> str:
            start.wait()
            return cache.ingress()

        with ThreadPoolExecutor(max_workers=CALLERS) as pool:
            results = list(pool.map(call, range(CALLERS)))

        assert calls == ["istio-system"]
        assert results == ["http://35.1.2.3"] * CALLERS

    def test_local_cluster_uses_pod_discovery(self, client: MagicMock) -> None:
        client.get_pods.return_value = [PodInfo("ingress", "Running", host_ip="10.0.0.5")]
        client.get_services.return_value = [ingress_service(node_ports={80: 30080})]
        cache = RuntimeQueryCache(
            client, namespace="t1", system_namespace="t1", local_cluster=True
        )

        assert cache.ingress() == "http://10.0.0.5:30080"

    def test_get_routes_execs_in_first_pod(self, client: MagicMock) -> None:
        client.exec_in_pod.return_value = CommandResult(success=True, stdout='{"routes": []}')
        cache = RuntimeQueryCache(
            client, namespace="t1", system_namespace="t1", local_cluster=True
        )

        assert cache.get_routes("productpage") == '{"routes": []}'
        client.exec_in_pod.assert_called_once_with(
            "t1",
            "productpage-1",
            ["client", "-url", "http://localhost:15000/routes"],
            container="app",
        )

    def test_get_routes_unknown_app(self, client: MagicMock) -> None:
        cache = RuntimeQueryCache(
            client, namespace="t1", system_namespace="t1", local_cluster=True
        )

        with pytest.raises(HarnessError, match="reviews"):
            cache.get_routes("reviews")
        client.exec_in_pod.assert_not_called()

    def test_get_routes_exec_failure(self, client: MagicMock) -> None:
        client.exec_in_pod.return_value = CommandResult(
            success=False, stderr="container not found", returncode=1
        )
        cache = RuntimeQueryCache(
            client, namespace="t1", system_namespace="t1", local_cluster=True
        )

        with pytest.raises(HarnessError, match="container not found"):
            cache.get_routes("productpage")
