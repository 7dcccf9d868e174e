from __future__ import annotations

from typing import Any

import pytest

from paas_controller.src.allocator import ResourceAllocator, deployment_handler, plan_handler
from paas_controller.src.errors import PlanNotFoundError, SkipReconcile, ValidationError
from paas_controller.src.events import EventRecorder
from paas_controller.src.plans import PlanResolver
from paas_controller.src.platform import LABEL_CLUSTER_PLAN
from paas_controller.src.workqueue import ObjectKey
from paas_controller.tests.fakes import (
    PLATFORM_NAMESPACE,
    FakeCluster,
    make_deployment,
    make_plan,
    store_of,
)

SMALL = {"limits": {"cpu": "500m", "memory": "256Mi"}, "requests": {"cpu": "100m", "memory": "128Mi"}}
KEY = ObjectKey("Deployment", "app-acme-co", "app")


def _allocator(cluster: FakeCluster, *plans: dict[str, Any]) -> ResourceAllocator:
    if not plans:
        plans = (make_plan("small", default=True, resources=SMALL),)
    resolver = PlanResolver(store_of(*plans), PLATFORM_NAMESPACE)
    return ResourceAllocator(cluster, resolver, EventRecorder(cluster, "test"), PLATFORM_NAMESPACE)


def test_enforces_plan_resources_and_label_in_one_write() -> None:
    cluster = FakeCluster()
    cluster.seed("Deployment", make_deployment())
    allocator = _allocator(cluster)

    allocator.reconcile(KEY, make_deployment())

    assert cluster.writes == [("replace", "Deployment", "app-acme-co", "app")]
    stored = cluster.find("Deployment", "app-acme-co", "app")
    assert stored is not None
    assert stored["spec"]["template"]["spec"]["containers"][0]["resources"] == SMALL
    assert stored["metadata"]["labels"][LABEL_CLUSTER_PLAN] == "small"


def test_converged_deployment_is_not_written_again() -> None:
    cluster = FakeCluster()
    cluster.seed("Deployment", make_deployment())
    allocator = _allocator(cluster)
    allocator.reconcile(KEY, make_deployment())
    converged = cluster.find("Deployment", "app-acme-co", "app")
    cluster.writes.clear()

    assert converged is not None
    allocator.reconcile(KEY, converged)

    assert cluster.writes == []


def test_equivalent_quantities_count_as_converged() -> None:
    cluster = FakeCluster()
    plan = make_plan("small", default=True, resources={"limits": {"cpu": "0.5", "memory": "1024Mi"}})
    canonical = make_deployment(
        labels={LABEL_CLUSTER_PLAN: "small"}, resources={"limits": {"cpu": "500m", "memory": "1Gi"}}
    )
    cluster.seed("Deployment", canonical)

    _allocator(cluster, plan).reconcile(KEY, canonical)

    assert cluster.writes == []


def test_changed_quantity_writes_the_plan_values_as_given() -> None:
    cluster = FakeCluster()
    plan = make_plan("small", default=True, resources={"limits": {"cpu": "0.5", "memory": "2Gi"}})
    deployment = make_deployment(
        labels={LABEL_CLUSTER_PLAN: "small"}, resources={"limits": {"cpu": "500m", "memory": "1Gi"}}
    )
    cluster.seed("Deployment", deployment)

    _allocator(cluster, plan).reconcile(KEY, deployment)

    stored = cluster.find("Deployment", "app-acme-co", "app")
    assert stored is not None
    assert stored["spec"]["template"]["spec"]["containers"][0]["resources"] == {
        "limits": {"cpu": "0.5", "memory": "2Gi"}
    }


def test_manual_resource_edit_is_reverted() -> None:
    cluster = FakeCluster()
    drifted = make_deployment(
        labels={LABEL_CLUSTER_PLAN: "small"}, resources={"limits": {"cpu": "8", "memory": "64Gi"}}
    )
    cluster.seed("Deployment", drifted)

    _allocator(cluster).reconcile(KEY, drifted)

    stored = cluster.find("Deployment", "app-acme-co", "app")
    assert stored is not None
    assert stored["spec"]["template"]["spec"]["containers"][0]["resources"] == SMALL


def test_label_only_drift_records_allocation_event() -> None:
    cluster = FakeCluster()
    deployment = make_deployment(labels={LABEL_CLUSTER_PLAN: "vanished"}, resources=SMALL)
    cluster.seed("Deployment", deployment)

    _allocator(cluster).reconcile(KEY, deployment)

    assert cluster.writes_of("replace", "Deployment") == [("replace", "Deployment", "app-acme-co", "app")]
    events = cluster.events("ResourceAllocation")
    assert len(events) == 1
    assert events[0]["type"] == "Normal"
    assert "small" in events[0]["message"]


def test_cached_object_is_not_mutated() -> None:
    cluster = FakeCluster()
    deployment = make_deployment()
    cluster.seed("Deployment", deployment)

    _allocator(cluster).reconcile(KEY, deployment)

    assert "resources" not in deployment["spec"]["template"]["spec"]["containers"][0]
    assert deployment["metadata"]["labels"] == {}


def test_explicit_plan_label_is_honoured() -> None:
    large = {"limits": {"cpu": "2"}}
    cluster = FakeCluster()
    deployment = make_deployment(labels={LABEL_CLUSTER_PLAN: "large"})
    cluster.seed("Deployment", deployment)

    _allocator(
        cluster,
        make_plan("small", default=True, resources=SMALL),
        make_plan("large", resources=large),
    ).reconcile(KEY, deployment)

    stored = cluster.find("Deployment", "app-acme-co", "app")
    assert stored is not None
    assert stored["spec"]["template"]["spec"]["containers"][0]["resources"] == large


def test_missing_plan_records_warning_and_raises() -> None:
    cluster = FakeCluster()
    deployment = make_deployment()

    with pytest.raises(PlanNotFoundError):
        _allocator(cluster, make_plan("large")).reconcile(KEY, deployment)

    assert len(cluster.events("PlanNotFound")) == 1
    assert cluster.writes_of(kind="Deployment") == []


def test_deployment_without_containers_is_invalid() -> None:
    cluster = FakeCluster()

    with pytest.raises(ValidationError):
        _allocator(cluster).reconcile(KEY, make_deployment(containers=[]))


@pytest.mark.parametrize("namespace", [PLATFORM_NAMESPACE, "kube-system", "default"])
def test_skips_deployments_outside_tenant_namespaces(namespace: str) -> None:
    cluster = FakeCluster()
    key = ObjectKey("Deployment", namespace, "app")

    with pytest.raises(SkipReconcile):
        _allocator(cluster).reconcile(key, make_deployment(namespace=namespace))


def test_skips_deployments_being_deleted() -> None:
    deployment = make_deployment()
    deployment["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"

    with pytest.raises(SkipReconcile):
        _allocator(FakeCluster()).reconcile(KEY, deployment)


def test_deployment_handler_ignores_rollouts_in_progress() -> None:
    keys: list[ObjectKey] = []
    handler = deployment_handler(keys.append, PLATFORM_NAMESPACE)
    assert handler.on_update is not None and handler.on_add is not None

    old = make_deployment(generation=1, observed_generation=1)
    handler.on_update(old, make_deployment(generation=2, observed_generation=1))
    assert keys == []

    handler.on_update(old, make_deployment(labels={LABEL_CLUSTER_PLAN: "large"}, generation=2))
    handler.on_update(old, old)
    handler.on_add(old)
    assert keys == [KEY, KEY, KEY]


def test_plan_handler_in_broker_namespace_enqueues_whole_organization() -> None:
    keys: list[ObjectKey] = []
    deployments = store_of(
        make_deployment("web", "app-acme-co"),
        make_deployment("api", "other-acme-co"),
        make_deployment("web", "app-globex-zz"),
    )
    handler = plan_handler(keys.append, deployments, PLATFORM_NAMESPACE)
    assert handler.on_update is not None

    old = make_plan("scope", "system-org-co", cluster_plan="small", resource_version="1")
    new = make_plan("scope", "system-org-co", cluster_plan="large", resource_version="2")
    handler.on_update(old, new)

    assert sorted(keys) == [
        ObjectKey("Deployment", "app-acme-co", "web"),
        ObjectKey("Deployment", "other-acme-co", "api"),
    ]


def test_plan_handler_ignores_unchanged_labels_and_platform_plans() -> None:
    keys: list[ObjectKey] = []
    handler = plan_handler(keys.append, store_of(make_deployment()), PLATFORM_NAMESPACE)
    assert handler.on_update is not None

    handler.on_update(make_plan("p", "app-acme-co"), make_plan("p", "app-acme-co", resource_version="2"))
    handler.on_update(
        make_plan("small"), make_plan("small", default=True, resource_version="2")
    )
    assert keys == []

    handler.on_update(
        make_plan("p", "app-acme-co"), make_plan("p", "app-acme-co", default=True, resource_version="2")
    )
    assert keys == [KEY]
