from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException

from paas_controller.src.kube import ClusterClient, name_of, namespace_of
from paas_controller.src.platform import format_timestamp

LOGGER = logging.getLogger(__name__)

NORMAL = "Normal"
WARNING = "Warning"

REASON_RESOURCE_ALLOCATION = "ResourceAllocation"
REASON_PLAN_NOT_FOUND = "PlanNotFound"
REASON_IDENTITY_MISMATCH = "IdentityMismatch"
REASON_MISSING_KEYS = "MissingKeys"
REASON_BUILD_FAILED = "BuildFailed"
REASON_RELEASE_EXPIRED = "ReleaseExpired"
REASON_DEPLOY_NOT_FOUND = "DeployNotFound"
REASON_RELEASE_NOT_FOUND = "ReleaseNotFound"


class EventRecorder:
    """Records core/v1 Events against the objects a controller touches.

    Recording is best effort: an API failure is logged and swallowed so a
    broken event sink never turns into a reconcile failure.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        component: str,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.cluster = cluster
        self.component = component
        self.now_fn = now_fn

    def event(self, obj: Mapping[str, Any], event_type: str, reason: str, message: str) -> None:
        name = name_of(obj)
        # Events about a Namespace live inside that namespace.
        namespace = name if obj.get("kind") == "Namespace" else namespace_of(obj)
        namespace = namespace or "default"
        timestamp = format_timestamp(self.now_fn())
        metadata = obj.get("metadata") or {}
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{name}.{uuid.uuid4().hex[:16]}",
                "namespace": namespace,
            },
            "involvedObject": {
                "apiVersion": obj.get("apiVersion"),
                "kind": obj.get("kind"),
                "name": name,
                "namespace": namespace_of(obj) or None,
                "uid": metadata.get("uid"),
                "resourceVersion": metadata.get("resourceVersion"),
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self.component},
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }
        log = LOGGER.warning if event_type == WARNING else LOGGER.info
        log("%s %s/%s: %s", reason, namespace, name, message)
        try:
            self.cluster.create("Event", namespace, body)
        except ApiException:
            LOGGER.exception("Failed to record %s event for %s/%s", reason, namespace, name)

    def normal(self, obj: Mapping[str, Any], reason: str, message: str) -> None:
        self.event(obj, NORMAL, reason, message)

    def warning(self, obj: Mapping[str, Any], reason: str, message: str) -> None:
        self.event(obj, WARNING, reason, message)
