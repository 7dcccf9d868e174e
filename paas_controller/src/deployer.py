from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException

from paas_controller.src.errors import SkipReconcile, ValidationError, write_failed
from paas_controller.src.events import (
    REASON_BUILD_FAILED,
    REASON_DEPLOY_NOT_FOUND,
    REASON_RELEASE_EXPIRED,
    REASON_RELEASE_NOT_FOUND,
    EventRecorder,
)
from paas_controller.src.informer import EventHandler, Store
from paas_controller.src.kube import (
    ClusterClient,
    annotations_of,
    labels_of,
    name_of,
    namespace_of,
    store_key,
)
from paas_controller.src.metrics import METRICS
from paas_controller.src.platform import (
    ANNOTATION_DEPLOYED_REVISION,
    ANNOTATION_RELEASE_NAME,
    BUILD_POD_TYPE,
    LABEL_BUILD_STATUS,
    LABEL_TYPE,
    RELEASE_EXPIRE_MINUTES,
    SYSTEM_SECRET_KEY,
    SYSTEM_SECRET_NAME,
    NamespaceIdentity,
    SlugPaths,
    release_expired,
    release_revision,
)
from paas_controller.src.workqueue import ObjectKey

LOGGER = logging.getLogger(__name__)

KIND = "Pod"
BUILD_POD_SELECTOR = f"{LABEL_TYPE}={BUILD_POD_TYPE}"

PHASE_SUCCEEDED = "Succeeded"
PHASE_FAILED = "Failed"


def build_phase(pod: dict[str, Any]) -> str:
    """The pod phase, downgraded to ``Failed`` when any container exited non-zero."""
    status = pod.get("status") or {}
    for container in status.get("containerStatuses") or []:
        terminated = (container.get("state") or {}).get("terminated") or {}
        if terminated.get("exitCode") not in (None, 0):
            return PHASE_FAILED
    return str(status.get("phase") or "Unknown")


class DeployerController:
    """Follows build pods to completion and rolls successful builds out.

    Every pass stamps ``paas.io/build-status`` on the Release. Failed builds
    are reported once and never retried; a new build has to be requested.
    Successful builds of auto-deploy Releases that have not expired are
    rolled out once, on the pass that first sees them succeed; a Release
    already stamped ``Succeeded`` is never rolled out again.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        recorder: EventRecorder,
        releases: Store,
        deployments: Store,
        *,
        slugrunner_image: str,
        object_store_url: str,
        path_prefix: str,
        release_expire_minutes: int = RELEASE_EXPIRE_MINUTES,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.cluster = cluster
        self.recorder = recorder
        self.releases = releases
        self.deployments = deployments
        self.slugrunner_image = slugrunner_image
        self.object_store_url = object_store_url.rstrip("/")
        self.path_prefix = path_prefix
        self.release_expire_minutes = release_expire_minutes
        self.now_fn = now_fn

    def reconcile(self, key: ObjectKey, pod: dict[str, Any]) -> None:
        if NamespaceIdentity.parse(key.namespace) is None:
            raise SkipReconcile(f"{key} is not in a platform namespace")

        release_name = annotations_of(pod).get(ANNOTATION_RELEASE_NAME)
        if not release_name:
            self.recorder.warning(
                pod,
                REASON_RELEASE_NOT_FOUND,
                "Couldn't find the release for the build, an annotation is missing on pod. "
                "The build must be manually deployed.",
            )
            raise SkipReconcile(f"{key} has no release back-reference")

        release, exists = self.releases.get_by_key(store_key(key.namespace, release_name))
        if not exists or release is None:
            self.recorder.warning(
                pod,
                REASON_RELEASE_NOT_FOUND,
                f"The release '{release_name}' wasn't found for this build, the build must be manually deployed.",
            )
            raise SkipReconcile(f"{key} references missing release {release_name}")

        phase = build_phase(pod)
        if phase == PHASE_FAILED:
            if self.stamp_status(release, phase):
                METRICS.builds_failed_total.inc()
                self.recorder.warning(
                    release, REASON_BUILD_FAILED, f"Build pod '{key.name}' failed, request a new build to retry"
                )
            return
        if phase != PHASE_SUCCEEDED:
            self.stamp_status(release, phase)
            return
        if labels_of(release).get(LABEL_BUILD_STATUS) == PHASE_SUCCEEDED:
            LOGGER.debug("%s - build for release %s already handled", key, release_name)
            return

        spec = release.get("spec") or {}
        if not spec.get("autoDeploy"):
            LOGGER.debug("%s - release %s is not set to auto deploy", key, release_name)
        elif release_expired(release, self.now_fn(), self.release_expire_minutes):
            self.recorder.warning(
                release, REASON_RELEASE_EXPIRED, "The release expired before its build finished, deploy it manually"
            )
        else:
            self.deploy(key, release)
        # Succeeded is only stamped once the rollout went through
        self.stamp_status(release, phase)

    def stamp_status(self, release: dict[str, Any], phase: str) -> bool:
        """Write the build phase onto the Release; returns whether the label changed."""
        if labels_of(release).get(LABEL_BUILD_STATUS) == phase:
            return False
        target = f"{namespace_of(release)}/{name_of(release)}"
        try:
            self.cluster.patch(
                "Release",
                namespace_of(release),
                name_of(release),
                {"metadata": {"labels": {LABEL_BUILD_STATUS: phase}}},
            )
        except ApiException as exc:
            raise write_failed(target, "stamping release build status", exc) from exc
        return True

    def deploy(self, key: ObjectKey, release: dict[str, Any]) -> None:
        spec = release.get("spec") or {}
        deploy_name = str(spec.get("deployName") or "")
        deployment, exists = self.deployments.get_by_key(store_key(key.namespace, deploy_name))
        if not exists or deployment is None:
            self.recorder.warning(release, REASON_DEPLOY_NOT_FOUND, f"Deploy '{deploy_name}' not found")
            return

        revision = release_revision(spec)
        if annotations_of(deployment).get(ANNOTATION_DEPLOYED_REVISION) == revision:
            LOGGER.debug("%s - revision %s already deployed to %s", key, revision, deploy_name)
            return

        patch = self.deploy_patch(key, deployment, revision)
        try:
            self.cluster.patch("Deployment", key.namespace, deploy_name, patch)
        except ApiException as exc:
            raise write_failed(f"{key.namespace}/{deploy_name}", "deploying release", exc) from exc
        METRICS.deploys_total.inc()
        self.recorder.normal(
            release, "Deployed", f"Deploy '{deploy_name}' updated with the new revision [{revision[:7]}]"
        )

    def slug_url(self, namespace: str, deploy_name: str, revision: str) -> str:
        paths = SlugPaths(namespace, deploy_name, self.path_prefix, revision)
        return f"{self.object_store_url}/{paths.tar_key}"

    def deploy_patch(self, key: ObjectKey, deployment: dict[str, Any], revision: str) -> dict[str, Any]:
        """Merge patch pointing the first container at the built slug.

        The full container list is sent because a merge patch replaces lists;
        every other container field is carried over from the cached copy.
        """
        containers = copy.deepcopy(
            (((deployment.get("spec") or {}).get("template") or {}).get("spec") or {}).get("containers") or []
        )
        if not containers:
            raise ValidationError(f"{key}: deployment {name_of(deployment)} doesn't have containers")

        container = containers[0]
        container["image"] = self.slugrunner_image
        container["args"] = ["start", "web"]
        container["ports"] = [{"name": "http", "containerPort": 5000, "protocol": "TCP"}]
        container["env"] = [
            {"name": "SLUG_URL", "value": self.slug_url(key.namespace, name_of(deployment), revision)},
            {
                "name": "AUTH_TOKEN",
                "valueFrom": {"secretKeyRef": {"name": SYSTEM_SECRET_NAME, "key": SYSTEM_SECRET_KEY}},
            },
        ]
        return {
            "metadata": {"annotations": {ANNOTATION_DEPLOYED_REVISION: revision}},
            "spec": {"paused": False, "template": {"spec": {"containers": containers}}},
        }

    def cleanup(self, key: ObjectKey) -> None:
        LOGGER.debug("%s - build pod is gone", key)


def pod_handler(enqueue: Callable[[ObjectKey], None]) -> EventHandler:
    """Build pods are queued when first seen and whenever their phase moves."""

    def _enqueue(pod: dict[str, Any]) -> None:
        if labels_of(pod).get(LABEL_TYPE) == BUILD_POD_TYPE:
            enqueue(ObjectKey(KIND, namespace_of(pod), name_of(pod)))

    def _on_update(old: dict[str, Any], new: dict[str, Any]) -> None:
        if build_phase(old) != build_phase(new):
            _enqueue(new)

    return EventHandler(on_add=_enqueue, on_update=_on_update)
