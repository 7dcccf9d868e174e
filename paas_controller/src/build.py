from __future__ import annotations

import logging
from collections.abc import Callable
from hashlib import sha256
from typing import Any

from kubernetes.client import ApiException

from paas_controller.src.errors import SkipReconcile, ValidationError, is_already_exists, write_failed
from paas_controller.src.informer import EventHandler
from paas_controller.src.kube import ClusterClient, is_marked_for_deletion, name_of, namespace_of
from paas_controller.src.metrics import METRICS
from paas_controller.src.platform import (
    ANNOTATION_RELEASE_NAME,
    BUILD_POD_TYPE,
    LABEL_APP,
    LABEL_GIT_REVISION,
    LABEL_TYPE,
    SYSTEM_SECRET_KEY,
    SYSTEM_SECRET_NAME,
    GitSha,
    NamespaceIdentity,
    SlugPaths,
    git_clone_url,
    release_revision,
)
from paas_controller.src.workqueue import ObjectKey

LOGGER = logging.getLogger(__name__)

KIND = "Release"
MAX_NAME_LENGTH = 63


def build_pod_name(deploy_name: str, build_revision: str) -> str:
    """Deterministic build pod name, shortened with a digest suffix past 63 characters."""
    name = f"sb-{deploy_name}-v{build_revision}"
    if len(name) <= MAX_NAME_LENGTH:
        return name
    suffix = sha256(name.encode("utf-8")).hexdigest()[:10]
    return f"{name[: MAX_NAME_LENGTH - len(suffix) - 1].rstrip('-.')}-{suffix}"


def build_requested(release: dict[str, Any]) -> bool:
    return bool((release.get("spec") or {}).get("build"))


class BuildController:
    """Launches one slug build pod per Release and clears the Release's build flag.

    The pod name only depends on the deployment and build revision, so a
    retried pass hits ``409 AlreadyExists`` instead of starting a second build.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        *,
        slugbuilder_image: str,
        path_prefix: str,
        debug_build: bool = False,
    ) -> None:
        self.cluster = cluster
        self.slugbuilder_image = slugbuilder_image
        self.path_prefix = path_prefix
        self.debug_build = debug_build

    def reconcile(self, key: ObjectKey, release: dict[str, Any]) -> None:
        if is_marked_for_deletion(release):
            raise SkipReconcile(f"{key} is being deleted")
        if NamespaceIdentity.parse(key.namespace) is None:
            raise SkipReconcile(f"{key} is not in a platform namespace")
        if not build_requested(release):
            raise SkipReconcile(f"{key} has no pending build")

        pod = self.build_pod(key, release)
        pod_name = name_of(pod)
        try:
            self.cluster.create("Pod", key.namespace, pod)
            METRICS.builds_started_total.inc()
            LOGGER.info("%s - build started for %s", key, pod_name)
        except ApiException as exc:
            if not is_already_exists(exc):
                raise write_failed(f"{key.namespace}/{pod_name}", "creating build pod", exc) from exc
            LOGGER.info("%s - build pod %s already exists", key, pod_name)

        try:
            self.cluster.patch(KIND, key.namespace, key.name, {"spec": {"build": False}})
        except ApiException as exc:
            raise write_failed(key, "clearing release build flag", exc) from exc

    def build_pod(self, key: ObjectKey, release: dict[str, Any]) -> dict[str, Any]:
        spec = release.get("spec") or {}
        deploy_name = str(spec.get("deployName") or "")
        if not deploy_name:
            raise ValidationError(f"{key}: release has no deployName")
        try:
            clone_url = git_clone_url(spec)
        except ValueError as exc:
            raise ValidationError(f"{key}: {exc}") from exc

        pod_name = build_pod_name(deploy_name, str(spec.get("buildRevision") or "0"))
        paths = SlugPaths(key.namespace, deploy_name, self.path_prefix, release_revision(spec))
        labels = {LABEL_TYPE: BUILD_POD_TYPE, LABEL_APP: deploy_name}
        git_revision = str(spec.get("gitRevision") or "")
        if git_revision:
            try:
                labels[LABEL_GIT_REVISION] = GitSha.parse(git_revision).short
            except ValueError as exc:
                raise ValidationError(f"{key}: {exc}") from exc

        env = {
            "GIT_CLONE_URL": clone_url,
            "GIT_REVISION": git_revision,
            "GIT_BRANCH": str(spec.get("gitBranch") or ""),
            "GIT_SOURCE": str(spec.get("source") or ""),
            "PUT_PATH": paths.push_key,
            "POD_NAME": pod_name,
        }
        if self.debug_build:
            env["DEBUG"] = "TRUE"

        return {
            "metadata": {
                "name": pod_name,
                "namespace": key.namespace,
                "labels": labels,
                "annotations": {ANNOTATION_RELEASE_NAME: key.name},
            },
            "spec": {
                "restartPolicy": "Never",
                "containers": [
                    {
                        "name": "slugbuilder",
                        "image": self.slugbuilder_image,
                        "imagePullPolicy": "IfNotPresent",
                        "env": [{"name": k, "value": v} for k, v in env.items()]
                        + [
                            {
                                "name": "AUTH_TOKEN",
                                "valueFrom": {
                                    "secretKeyRef": {"name": SYSTEM_SECRET_NAME, "key": SYSTEM_SECRET_KEY}
                                },
                            }
                        ],
                    }
                ],
            },
        }

    def cleanup(self, key: ObjectKey) -> None:
        LOGGER.debug("%s - release is gone", key)


def release_handler(enqueue: Callable[[ObjectKey], None]) -> EventHandler:
    def _enqueue(release: dict[str, Any]) -> None:
        if build_requested(release):
            enqueue(ObjectKey(KIND, namespace_of(release), name_of(release)))

    return EventHandler(on_add=_enqueue, on_update=lambda old, new: _enqueue(new))
