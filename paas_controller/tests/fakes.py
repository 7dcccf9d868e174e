from __future__ import annotations

import copy
import itertools
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException

from paas_controller.src.informer import Store
from paas_controller.src.kube import resolve_kind, with_type_meta
from paas_controller.src.platform import (
    ANNOTATION_OWNER,
    LABEL_CLUSTER_PLAN,
    LABEL_DEFAULT,
    format_timestamp,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
PLATFORM_NAMESPACE = "paas-system"


def merge_patch(target: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            merge_patch(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


class FakeCluster:
    """In-memory stand-in for :class:`ClusterClient`.

    Only successful writes are logged in ``writes``; ``fail`` queues API
    errors for a verb/kind pair.
    """

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.writes: list[tuple[str, str, str, str]] = []
        self.patches: list[tuple[str, str, str, dict[str, Any], bool]] = []
        self.failures: dict[tuple[str, str], list[int]] = {}
        self._versions = itertools.count(1)

    def _key(self, kind: str, namespace: str, name: str) -> tuple[str, str, str]:
        rk = resolve_kind(kind)
        return (rk.name, namespace if rk.namespaced else "", name)

    def _maybe_fail(self, verb: str, kind: str) -> None:
        queued = self.failures.get((verb, kind))
        if queued:
            raise ApiException(status=queued.pop(0), reason="injected")

    def fail(self, verb: str, kind: str, status: int, times: int = 1) -> None:
        self.failures.setdefault((verb, kind), []).extend([status] * times)

    def seed(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        stored = with_type_meta(resolve_kind(kind), copy.deepcopy(obj))
        metadata = stored.setdefault("metadata", {})
        metadata.setdefault("resourceVersion", str(next(self._versions)))
        self.objects[self._key(kind, metadata.get("namespace", ""), metadata["name"])] = stored
        return copy.deepcopy(stored)

    def find(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        obj = self.objects.get(self._key(kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def of_kind(self, kind: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(obj) for (k, _, _), obj in self.objects.items() if k == kind]

    def events(self, reason: str | None = None) -> list[dict[str, Any]]:
        return [event for event in self.of_kind("Event") if reason is None or event["reason"] == reason]

    def writes_of(self, verb: str | None = None, kind: str | None = None) -> list[tuple[str, str, str, str]]:
        return [w for w in self.writes if (verb is None or w[0] == verb) and (kind is None or w[1] == kind)]

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        self._maybe_fail("get", kind)
        obj = self.find(kind, namespace, name)
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return obj

    def create(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail("create", kind)
        obj = with_type_meta(resolve_kind(kind), copy.deepcopy(body))
        metadata = obj.setdefault("metadata", {})
        if resolve_kind(kind).namespaced:
            metadata["namespace"] = namespace
        key = self._key(kind, namespace, metadata["name"])
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        metadata["resourceVersion"] = str(next(self._versions))
        metadata.setdefault("creationTimestamp", format_timestamp(self.now))
        self.objects[key] = obj
        self.writes.append(("create", resolve_kind(kind).name, namespace, metadata["name"]))
        return copy.deepcopy(obj)

    def replace(self, kind: str, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail("replace", kind)
        key = self._key(kind, namespace, name)
        if key not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        obj = with_type_meta(resolve_kind(kind), copy.deepcopy(body))
        obj.setdefault("metadata", {})["resourceVersion"] = str(next(self._versions))
        self.objects[key] = obj
        self.writes.append(("replace", resolve_kind(kind).name, namespace, name))
        return copy.deepcopy(obj)

    def patch(
        self, kind: str, namespace: str, name: str, body: dict[str, Any], *, strategic: bool = False
    ) -> dict[str, Any]:
        self._maybe_fail("patch", kind)
        key = self._key(kind, namespace, name)
        if key not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        obj = merge_patch(self.objects[key], copy.deepcopy(body))
        obj.setdefault("metadata", {})["resourceVersion"] = str(next(self._versions))
        self.writes.append(("patch", resolve_kind(kind).name, namespace, name))
        self.patches.append((resolve_kind(kind).name, namespace, name, copy.deepcopy(body), strategic))
        return copy.deepcopy(obj)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        self._maybe_fail("delete", kind)
        key = self._key(kind, namespace, name)
        if key not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        del self.objects[key]
        self.writes.append(("delete", resolve_kind(kind).name, namespace, name))

    def list_func(self, kind: str, namespace: str | None = None) -> Callable[..., dict[str, Any]]:
        def _list(**kwargs: Any) -> dict[str, Any]:
            items = [
                obj
                for (k, ns, _), obj in self.objects.items()
                if k == resolve_kind(kind).name and (not namespace or ns == namespace)
            ]
            return {"metadata": {"resourceVersion": str(next(self._versions))}, "items": copy.deepcopy(items)}

        return _list


def store_of(*objs: dict[str, Any]) -> Store:
    store = Store()
    for obj in objs:
        store.add(obj)
    return store


def make_plan(
    name: str,
    namespace: str = PLATFORM_NAMESPACE,
    *,
    default: bool = False,
    cluster_plan: str | None = None,
    plan_type: str = "",
    resources: dict[str, Any] | None = None,
    hard: dict[str, Any] | None = None,
    roles: list[str] | None = None,
    storage: str | None = None,
    resource_version: str = "1",
) -> dict[str, Any]:
    labels: dict[str, str] = {}
    if default:
        labels[LABEL_DEFAULT] = "true"
    if cluster_plan is not None:
        labels[LABEL_CLUSTER_PLAN] = cluster_plan
    spec: dict[str, Any] = {}
    if plan_type:
        spec["type"] = plan_type
    if resources is not None:
        spec["resources"] = resources
    if hard is not None:
        spec["hard"] = hard
    if roles is not None:
        spec["roles"] = roles
    if storage is not None:
        spec["storage"] = storage
    return {
        "kind": "Plan",
        "metadata": {"name": name, "namespace": namespace, "labels": labels, "resourceVersion": resource_version},
        "spec": spec,
    }


def make_deployment(
    name: str = "app",
    namespace: str = "app-acme-co",
    *,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    resources: dict[str, Any] | None = None,
    containers: list[dict[str, Any]] | None = None,
    generation: int = 1,
    observed_generation: int = 1,
    resource_version: str = "1",
) -> dict[str, Any]:
    if containers is None:
        container: dict[str, Any] = {"name": "app", "image": "registry.local/app:1"}
        if resources is not None:
            container["resources"] = resources
        containers = [container]
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": dict(labels or {}),
            "annotations": dict(annotations or {}),
            "generation": generation,
            "resourceVersion": resource_version,
        },
        "spec": {"paused": True, "template": {"spec": {"containers": containers}}},
        "status": {"observedGeneration": observed_generation},
    }


def make_namespace(
    name: str = "app-acme-co",
    *,
    owner: str | None = '{"username": "jane", "customer": "acme", "org": "co"}',
    annotations: dict[str, str] | None = None,
    phase: str = "Active",
) -> dict[str, Any]:
    all_annotations = dict(annotations or {})
    if owner is not None:
        all_annotations[ANNOTATION_OWNER] = owner
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {"name": name, "annotations": all_annotations, "resourceVersion": "1"},
        "status": {"phase": phase},
    }
