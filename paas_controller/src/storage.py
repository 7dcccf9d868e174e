from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException

from paas_controller.src.errors import (
    PlanNotFoundError,
    SkipReconcile,
    ValidationError,
    is_already_exists,
    write_failed,
)
from paas_controller.src.events import REASON_PLAN_NOT_FOUND, EventRecorder
from paas_controller.src.informer import EventHandler
from paas_controller.src.kube import (
    ClusterClient,
    annotations_of,
    is_marked_for_deletion,
    labels_of,
    merge_patch_annotations,
    name_of,
    namespace_of,
)
from paas_controller.src.plans import PlanResolver
from paas_controller.src.platform import (
    ANNOTATION_SETUP_STORAGE,
    LABEL_APP,
    LABEL_STORAGE_PLAN,
    NamespaceIdentity,
)
from paas_controller.src.workqueue import ObjectKey

LOGGER = logging.getLogger(__name__)

KIND = "Deployment"


def claim_name(deploy_name: str) -> str:
    return f"d-{deploy_name}"


def storage_requested(deployment: dict[str, Any]) -> bool:
    return (
        annotations_of(deployment).get(ANNOTATION_SETUP_STORAGE) == "true"
        and bool(labels_of(deployment).get(LABEL_STORAGE_PLAN))
    )


class StorageProvisioner:
    """Creates the persistent volume claim a Deployment's storage plan asks for.

    Once the claim exists the ``paas.io/setup-storage`` annotation is flipped
    to ``"false"`` so the request is served exactly once.
    """

    def __init__(self, cluster: ClusterClient, plans: PlanResolver, recorder: EventRecorder) -> None:
        self.cluster = cluster
        self.plans = plans
        self.recorder = recorder

    def reconcile(self, key: ObjectKey, deployment: dict[str, Any]) -> None:
        if NamespaceIdentity.parse(key.namespace) is None:
            raise SkipReconcile(f"{key} is not in a platform namespace")
        if is_marked_for_deletion(deployment):
            raise SkipReconcile(f"{key} is being deleted")
        if not storage_requested(deployment):
            raise SkipReconcile(f"{key} has no pending storage request")

        plan_name = labels_of(deployment)[LABEL_STORAGE_PLAN]
        try:
            plan = self.plans.storage_plan(plan_name)
        except PlanNotFoundError as exc:
            self.recorder.warning(deployment, REASON_PLAN_NOT_FOUND, str(exc))
            raise
        size = (plan.get("spec") or {}).get("storage")
        if not size:
            raise ValidationError(f"{key}: storage plan {plan_name} has no storage size")

        claim = {
            "metadata": {
                "name": claim_name(key.name),
                "namespace": key.namespace,
                "labels": {LABEL_APP: key.name, LABEL_STORAGE_PLAN: plan_name},
            },
            "spec": {
                "accessModes": ["ReadWriteOnce"],
                "resources": {"requests": {"storage": str(size)}},
            },
        }
        target = f"{key.namespace}/{claim_name(key.name)}"
        try:
            self.cluster.create("PersistentVolumeClaim", key.namespace, claim)
            LOGGER.info("%s - created volume claim %s (%s)", key, claim_name(key.name), size)
        except ApiException as exc:
            if not is_already_exists(exc):
                raise write_failed(target, "creating persistent volume claim", exc) from exc

        try:
            self.cluster.patch(KIND, key.namespace, key.name, merge_patch_annotations({ANNOTATION_SETUP_STORAGE: "false"}))
        except ApiException as exc:
            raise write_failed(key, "clearing setup-storage flag", exc) from exc

    def cleanup(self, key: ObjectKey) -> None:
        LOGGER.debug("%s - deployment is gone, its claim is kept for the tenant", key)


def deployment_handler(enqueue: Callable[[ObjectKey], None]) -> EventHandler:
    def _enqueue(deployment: dict[str, Any]) -> None:
        if storage_requested(deployment):
            enqueue(ObjectKey(KIND, namespace_of(deployment), name_of(deployment)))

    return EventHandler(on_add=_enqueue, on_update=lambda old, new: _enqueue(new))
