from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException

from paas_controller.src.errors import (
    SkipReconcile,
    TerminalError,
    ValidationError,
    is_already_exists,
    write_failed,
)
from paas_controller.src.events import REASON_MISSING_KEYS, EventRecorder
from paas_controller.src.informer import EventHandler
from paas_controller.src.kube import (
    ClusterClient,
    annotations_of,
    is_marked_for_deletion,
    merge_patch_annotations,
    name_of,
    namespace_of,
)
from paas_controller.src.platform import (
    ANNOTATION_AUTH_TOKEN,
    ANNOTATION_AUTO_DEPLOY,
    ANNOTATION_BUILD,
    ANNOTATION_BUILD_REVISION,
    ANNOTATION_BUILD_SOURCE,
    ANNOTATION_GIT_BRANCH,
    ANNOTATION_GIT_REMOTE,
    ANNOTATION_GIT_REPOSITORY,
    ANNOTATION_GIT_REVISION,
    LABEL_DEPLOY,
    LABEL_GIT_REVISION,
    RELEASE_EXPIRE_MINUTES,
    GitSha,
    NamespaceIdentity,
)
from paas_controller.src.workqueue import ObjectKey

LOGGER = logging.getLogger(__name__)

KIND = "Deployment"
RELEASE_KIND = "Release"

REQUIRED_KEYS = (ANNOTATION_GIT_REMOTE, ANNOTATION_GIT_REPOSITORY, ANNOTATION_BUILD_REVISION)


def release_name(deploy_name: str, build_revision: str) -> str:
    return f"{deploy_name}-v{build_revision}"


def build_requested(deployment: dict[str, Any]) -> bool:
    return annotations_of(deployment).get(ANNOTATION_BUILD) == "true"


class ReleaseController:
    """Turns a Deployment's build request into a Release record.

    The Release is created first and the Deployment's ``paas.io/build``
    annotation is flipped to ``"false"`` afterwards with a merge patch. A
    retry after a failed patch finds the Release already present and only
    repeats the patch.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        recorder: EventRecorder,
        release_expire_minutes: int = RELEASE_EXPIRE_MINUTES,
    ) -> None:
        self.cluster = cluster
        self.recorder = recorder
        self.release_expire_minutes = release_expire_minutes

    def reconcile(self, key: ObjectKey, deployment: dict[str, Any]) -> None:
        if NamespaceIdentity.parse(key.namespace) is None:
            raise SkipReconcile(f"{key} is not in a platform namespace")
        if is_marked_for_deletion(deployment):
            raise SkipReconcile(f"{key} is being deleted")
        if not build_requested(deployment):
            raise SkipReconcile(f"{key} has no pending build request")

        release = self.new_release(key, deployment)
        name = name_of(release)
        try:
            self.cluster.create(RELEASE_KIND, key.namespace, release)
            LOGGER.info("%s - new release created %s", key, name)
        except ApiException as exc:
            if not is_already_exists(exc):
                raise write_failed(f"{key.namespace}/{name}", "creating release", exc) from exc
            LOGGER.info("%s - release %s already exists", key, name)

        try:
            self.cluster.patch(KIND, key.namespace, key.name, merge_patch_annotations({ANNOTATION_BUILD: "false"}))
        except ApiException as exc:
            raise write_failed(key, "deactivating deployment build", exc) from exc

    def new_release(self, key: ObjectKey, deployment: dict[str, Any]) -> dict[str, Any]:
        """Synthesize the Release for the deployment's current build request.

        Raises :class:`TerminalError` when required annotations are missing and
        :class:`ValidationError` for a malformed git revision.
        """
        annotations = annotations_of(deployment)
        missing = [k for k in REQUIRED_KEYS if not annotations.get(k)]
        if missing:
            message = f"missing required key(s) {', '.join(missing)}"
            self.recorder.warning(deployment, REASON_MISSING_KEYS, message)
            raise TerminalError(f"{key}: {message}")

        labels = {LABEL_DEPLOY: key.name}
        git_revision = annotations.get(ANNOTATION_GIT_REVISION) or ""
        if git_revision:
            try:
                sha = GitSha.parse(git_revision)
            except ValueError as exc:
                raise ValidationError(f"{key}: {exc}") from exc
            labels[LABEL_GIT_REVISION] = sha.short

        build_revision = annotations[ANNOTATION_BUILD_REVISION]
        return {
            "metadata": {
                "name": release_name(key.name, build_revision),
                "namespace": key.namespace,
                "labels": labels,
            },
            "spec": {
                "gitRemote": annotations[ANNOTATION_GIT_REMOTE],
                "gitRepository": annotations[ANNOTATION_GIT_REPOSITORY],
                "gitRevision": git_revision,
                "gitBranch": annotations.get(ANNOTATION_GIT_BRANCH, ""),
                "buildRevision": build_revision,
                "deployName": key.name,
                "autoDeploy": annotations.get(ANNOTATION_AUTO_DEPLOY) == "true",
                "expireAfter": self.release_expire_minutes,
                "build": True,
                "authToken": annotations.get(ANNOTATION_AUTH_TOKEN, ""),
                "source": annotations.get(ANNOTATION_BUILD_SOURCE, ""),
            },
        }

    def cleanup(self, key: ObjectKey) -> None:
        LOGGER.debug("%s - deployment is gone, no build to request", key)


def deployment_handler(enqueue: Callable[[ObjectKey], None]) -> EventHandler:
    """Enqueue Deployments carrying a pending build request."""

    def _enqueue(deployment: dict[str, Any]) -> None:
        if build_requested(deployment):
            enqueue(ObjectKey(KIND, namespace_of(deployment), name_of(deployment)))

    return EventHandler(on_add=_enqueue, on_update=lambda old, new: _enqueue(new))
