from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException

from paas_controller.src.errors import PlanNotFoundError, SkipReconcile, ValidationError, write_failed
from paas_controller.src.events import REASON_PLAN_NOT_FOUND, REASON_RESOURCE_ALLOCATION, EventRecorder
from paas_controller.src.informer import EventHandler, Store
from paas_controller.src.kube import (
    ClusterClient,
    is_marked_for_deletion,
    labels_of,
    name_of,
    namespace_of,
    resource_version_of,
)
from paas_controller.src.plans import PlanResolver, plan_resources, resources_equal
from paas_controller.src.platform import LABEL_CLUSTER_PLAN, NamespaceIdentity
from paas_controller.src.workqueue import ObjectKey

LOGGER = logging.getLogger(__name__)

KIND = "Deployment"


def _containers(deployment: dict[str, Any]) -> list[dict[str, Any]]:
    template = (deployment.get("spec") or {}).get("template") or {}
    return (template.get("spec") or {}).get("containers") or []


class ResourceAllocator:
    """Binds every tenant Deployment to a compute Plan.

    The first container's ``resources`` are kept equal to the Plan's and the
    ``paas.io/clusterplan`` label names the enforced Plan. A pass performs one
    full update when anything drifted and no write at all once converged, so
    periodic resyncs are cheap.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        plans: PlanResolver,
        recorder: EventRecorder,
        platform_namespace: str,
    ) -> None:
        self.cluster = cluster
        self.plans = plans
        self.recorder = recorder
        self.platform_namespace = platform_namespace

    def reconcile(self, key: ObjectKey, deployment: dict[str, Any]) -> None:
        if key.namespace == self.platform_namespace:
            raise SkipReconcile(f"{key} lives in the platform namespace")
        identity = NamespaceIdentity.parse(key.namespace)
        if identity is None:
            raise SkipReconcile(f"{key} is not in a platform namespace")
        if is_marked_for_deletion(deployment):
            raise SkipReconcile(f"{key} is being deleted")

        try:
            plan = self.plans.resolve(identity, labels_of(deployment).get(LABEL_CLUSTER_PLAN))
        except PlanNotFoundError as exc:
            self.recorder.warning(deployment, REASON_PLAN_NOT_FOUND, str(exc))
            raise

        containers = _containers(deployment)
        if not containers:
            raise ValidationError(f"{key}: cannot enforce allocation, deployment doesn't have containers")
        if len(containers) > 1:
            LOGGER.warning("%s - found more than one container, enforcing the first one only", key)

        plan_name = name_of(plan)
        desired = plan_resources(plan)
        if not resources_equal(containers[0].get("resources"), desired):
            updated = copy.deepcopy(deployment)
            _containers(updated)[0]["resources"] = copy.deepcopy(desired)
            updated.setdefault("metadata", {}).setdefault("labels", {})[LABEL_CLUSTER_PLAN] = plan_name
            LOGGER.info("%s - enforcing allocation with plan %s", key, plan_name)
            self._update(key, updated, "updating deployment compute resources")
            return

        if labels_of(deployment).get(LABEL_CLUSTER_PLAN) != plan_name:
            updated = copy.deepcopy(deployment)
            updated.setdefault("metadata", {}).setdefault("labels", {})[LABEL_CLUSTER_PLAN] = plan_name
            LOGGER.info("%s - enforcing clusterplan label %s", key, plan_name)
            self._update(key, updated, "updating deployment labels")
            self.recorder.normal(
                deployment, REASON_RESOURCE_ALLOCATION, f"Successfully allocated plan '{plan_name}'"
            )

    def _update(self, key: ObjectKey, body: dict[str, Any], operation: str) -> None:
        try:
            self.cluster.replace(KIND, key.namespace, key.name, body)
        except ApiException as exc:
            raise write_failed(key, operation, exc) from exc

    def cleanup(self, key: ObjectKey) -> None:
        LOGGER.debug("%s - deployment is gone, nothing to release", key)


def deployment_handler(enqueue: Callable[[ObjectKey], None], platform_namespace: str) -> EventHandler:
    """Enqueue new Deployments, plan label changes and settled generations (including resyncs)."""

    def on_add(deployment: dict[str, Any]) -> None:
        enqueue(ObjectKey(KIND, namespace_of(deployment), name_of(deployment)))

    def on_update(old: dict[str, Any], new: dict[str, Any]) -> None:
        if namespace_of(new) == platform_namespace:
            return
        key = ObjectKey(KIND, namespace_of(new), name_of(new))
        if labels_of(old).get(LABEL_CLUSTER_PLAN) != labels_of(new).get(LABEL_CLUSTER_PLAN):
            enqueue(key)
            return
        old_meta, new_meta = old.get("metadata") or {}, new.get("metadata") or {}
        old_status, new_status = old.get("status") or {}, new.get("status") or {}
        if old_meta.get("generation") == new_meta.get("generation") and old_status.get(
            "observedGeneration"
        ) == new_status.get("observedGeneration"):
            enqueue(key)

    return EventHandler(on_add=on_add, on_update=on_update)


def _in_organization(obj: dict[str, Any], organization: str) -> bool:
    identity = NamespaceIdentity.parse(namespace_of(obj))
    return identity is not None and not identity.is_system() and identity.organization == organization


def plan_handler(
    enqueue: Callable[[ObjectKey], None], deployments: Store, platform_namespace: str
) -> EventHandler:
    """Re-check Deployments when a scoped Plan's labels change.

    A Plan in a broker namespace scopes the whole organization, so every
    cached Deployment of that organization is enqueued; a Plan anywhere else
    only affects its own namespace.
    """

    def on_update(old: dict[str, Any], new: dict[str, Any]) -> None:
        if resource_version_of(old) == resource_version_of(new):
            return
        namespace = namespace_of(new)
        if namespace == platform_namespace or labels_of(old) == labels_of(new):
            return
        scope = NamespaceIdentity.parse(namespace)
        if scope is not None and scope.is_system():
            candidates = [d for d in deployments.list() if _in_organization(d, scope.organization)]
        else:
            candidates = deployments.list_namespace(namespace)
        for deployment in candidates:
            enqueue(ObjectKey(KIND, namespace_of(deployment), name_of(deployment)))

    return EventHandler(on_update=on_update)
