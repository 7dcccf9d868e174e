from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException

from paas_controller.src.errors import SkipReconcile, is_already_exists, is_not_found, write_failed
from paas_controller.src.informer import EventHandler
from paas_controller.src.kube import ClusterClient, labels_of, name_of, namespace_of
from paas_controller.src.plans import PlanResolver
from paas_controller.src.platform import LABEL_CLUSTER_PLAN
from paas_controller.src.workqueue import ObjectKey

LOGGER = logging.getLogger(__name__)

KIND = "Plan"
STATUS_KIND = "ServicePlanStatus"
PHASE_ACTIVE = "Active"
PHASE_NOT_FOUND = "NotFound"


class ServicePlanStatusPropagator:
    """Mirrors whether a tenant-scoped Plan's referenced cluster plan exists.

    The status object shares the Plan's name and namespace. It is rewritten
    only when phase or labels changed and removed when the Plan goes away.
    """

    def __init__(self, cluster: ClusterClient, plans: PlanResolver) -> None:
        self.cluster = cluster
        self.plans = plans

    def desired_status(self, plan: dict[str, Any]) -> dict[str, Any]:
        cluster_plan = labels_of(plan).get(LABEL_CLUSTER_PLAN, "")
        status: dict[str, Any] = {"metadata": {"name": name_of(plan)}, "phase": PHASE_ACTIVE}
        if self.plans.cluster_plan(cluster_plan) is not None:
            status["metadata"]["labels"] = {"clusterplan": cluster_plan}
        else:
            status["phase"] = PHASE_NOT_FOUND
        return status

    def reconcile(self, key: ObjectKey, plan: dict[str, Any]) -> None:
        if key.namespace == self.plans.platform_namespace:
            raise SkipReconcile(f"{key} is a cluster plan")

        desired = self.desired_status(plan)
        target = f"{key.namespace}/{STATUS_KIND}/{key.name}"
        try:
            existing = self.cluster.get(STATUS_KIND, key.namespace, key.name)
        except ApiException as exc:
            if not is_not_found(exc):
                raise write_failed(target, "reading service plan status", exc) from exc
            existing = None

        if existing is None:
            try:
                self.cluster.create(STATUS_KIND, key.namespace, desired)
                LOGGER.info("%s - created status with phase %s", target, desired["phase"])
            except ApiException as exc:
                if not is_already_exists(exc):
                    raise write_failed(target, "creating service plan status", exc) from exc
            return

        current_labels = labels_of(existing)
        desired_labels = desired["metadata"].get("labels") or {}
        if existing.get("phase") == desired["phase"] and dict(current_labels) == desired_labels:
            return
        updated = copy.deepcopy(existing)
        updated["phase"] = desired["phase"]
        updated.setdefault("metadata", {})["labels"] = desired_labels
        try:
            self.cluster.replace(STATUS_KIND, key.namespace, key.name, updated)
            LOGGER.info("%s - updated status to phase %s", target, desired["phase"])
        except ApiException as exc:
            raise write_failed(target, "updating service plan status", exc) from exc

    def cleanup(self, key: ObjectKey) -> None:
        if key.namespace == self.plans.platform_namespace:
            return
        target = f"{key.namespace}/{STATUS_KIND}/{key.name}"
        try:
            self.cluster.delete(STATUS_KIND, key.namespace, key.name)
            LOGGER.info("%s - removed status", target)
        except ApiException as exc:
            if not is_not_found(exc):
                raise write_failed(target, "deleting service plan status", exc) from exc


def plan_handler(enqueue: Callable[[ObjectKey], None]) -> EventHandler:
    def _enqueue(plan: dict[str, Any]) -> None:
        enqueue(ObjectKey(KIND, namespace_of(plan), name_of(plan)))

    return EventHandler(
        on_add=_enqueue,
        on_update=lambda old, new: _enqueue(new),
        on_delete=_enqueue,
    )
