from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiClient,
    AppsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    NetworkingV1Api,
    RbacAuthorizationV1Api,
)
from kubernetes.config.config_exception import ConfigException

from paas_controller.src.errors import UnknownKindError
from paas_controller.src.platform import API_VERSION, GROUP, VERSION

LOGGER = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"
STRATEGIC_MERGE_PATCH = "application/strategic-merge-patch+json"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


@dataclass(frozen=True)
class ResourceKind:
    """One entry of the closed table of kinds the controllers touch.

    ``api`` names the client the kind lives on; ``suffix`` is the snake-case
    stem of the generated client methods (``read_namespaced_<suffix>``).
    Custom resources carry their ``plural`` instead.
    """

    name: str
    api: str
    api_version: str
    suffix: str = ""
    namespaced: bool = True
    plural: str = ""

    @property
    def is_custom(self) -> bool:
        return self.api == "custom"


KINDS: dict[str, ResourceKind] = {
    kind.name: kind
    for kind in (
        ResourceKind("Namespace", "core", "v1", "namespace", namespaced=False),
        ResourceKind("Pod", "core", "v1", "pod"),
        ResourceKind("Secret", "core", "v1", "secret"),
        ResourceKind("ResourceQuota", "core", "v1", "resource_quota"),
        ResourceKind("PersistentVolumeClaim", "core", "v1", "persistent_volume_claim"),
        ResourceKind("Event", "core", "v1", "event"),
        ResourceKind("Deployment", "apps", "apps/v1", "deployment"),
        ResourceKind("Role", "rbac", "rbac.authorization.k8s.io/v1", "role"),
        ResourceKind("RoleBinding", "rbac", "rbac.authorization.k8s.io/v1", "role_binding"),
        ResourceKind("ClusterRole", "rbac", "rbac.authorization.k8s.io/v1", "cluster_role", namespaced=False),
        ResourceKind("NetworkPolicy", "networking", "networking.k8s.io/v1", "network_policy"),
        ResourceKind("Plan", "custom", API_VERSION, plural="plans"),
        ResourceKind("Release", "custom", API_VERSION, plural="releases"),
        ResourceKind("ServicePlanStatus", "custom", API_VERSION, plural="serviceplanstatuses"),
    )
}


def resolve_kind(kind: str | ResourceKind) -> ResourceKind:
    if isinstance(kind, ResourceKind):
        return kind
    try:
        return KINDS[kind]
    except KeyError:
        raise UnknownKindError(f"unknown resource kind {kind!r}") from None


@functools.lru_cache(maxsize=1)
def _serializer() -> ApiClient:
    return ApiClient()


def to_dict(obj: Any) -> dict[str, Any]:
    """Normalise a client model (or dict) into its camelCase JSON form."""
    if isinstance(obj, dict):
        return obj
    if obj is None:
        return {}
    return _serializer().sanitize_for_serialization(obj)


def meta(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def name_of(obj: Mapping[str, Any]) -> str:
    return str(meta(obj).get("name") or "")


def namespace_of(obj: Mapping[str, Any]) -> str:
    return str(meta(obj).get("namespace") or "")


def labels_of(obj: Mapping[str, Any]) -> Mapping[str, str]:
    return meta(obj).get("labels") or {}


def annotations_of(obj: Mapping[str, Any]) -> Mapping[str, str]:
    return meta(obj).get("annotations") or {}


def resource_version_of(obj: Mapping[str, Any]) -> str:
    return str(meta(obj).get("resourceVersion") or "")


def is_marked_for_deletion(obj: Mapping[str, Any]) -> bool:
    return bool(meta(obj).get("deletionTimestamp"))


def store_key(namespace: str, name: str) -> str:
    """Cache key in the ``namespace/name`` form (just ``name`` for cluster-scoped objects)."""
    return f"{namespace}/{name}" if namespace else name


def object_store_key(obj: Mapping[str, Any]) -> str:
    return store_key(namespace_of(obj), name_of(obj))


def with_type_meta(kind: ResourceKind, body: Mapping[str, Any]) -> dict[str, Any]:
    """Fill in ``apiVersion``/``kind`` that cached list items do not carry."""
    return {"apiVersion": kind.api_version, "kind": kind.name, **body}


def merge_patch_annotations(annotations: Mapping[str, str]) -> dict[str, Any]:
    return {"metadata": {"annotations": dict(annotations)}}


class ClusterClient:
    """Thin adapter over the generated API clients, dispatching on :class:`ResourceKind`.

    Every method takes and returns plain dicts so reconcilers never depend on
    the generated model classes.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        rbac_api: RbacAuthorizationV1Api,
        networking_api: NetworkingV1Api,
        custom_api: CustomObjectsApi,
    ) -> None:
        self._apis: dict[str, Any] = {
            "core": core_api,
            "apps": apps_api,
            "rbac": rbac_api,
            "networking": networking_api,
            "custom": custom_api,
        }

    def _api(self, kind: ResourceKind) -> Any:
        return self._apis[kind.api]

    def _custom_args(self, kind: ResourceKind) -> dict[str, str]:
        return {"group": GROUP, "version": VERSION, "plural": kind.plural}

    def list_func(self, kind: str | ResourceKind, namespace: str | None = None) -> Callable[..., Any]:
        """Return the list callable an informer lists and watches with."""
        rk = resolve_kind(kind)
        api = self._api(rk)
        if rk.is_custom:
            if namespace:
                return functools.partial(
                    api.list_namespaced_custom_object, namespace=namespace, **self._custom_args(rk)
                )
            return functools.partial(api.list_cluster_custom_object, **self._custom_args(rk))
        if not rk.namespaced:
            return getattr(api, f"list_{rk.suffix}")
        if namespace:
            return functools.partial(getattr(api, f"list_namespaced_{rk.suffix}"), namespace=namespace)
        return getattr(api, f"list_{rk.suffix}_for_all_namespaces")

    def list(self, kind: str | ResourceKind, namespace: str | None = None, **kwargs: Any) -> dict[str, Any]:
        return to_dict(self.list_func(kind, namespace)(**kwargs))

    def get(self, kind: str | ResourceKind, namespace: str, name: str) -> dict[str, Any]:
        rk = resolve_kind(kind)
        api = self._api(rk)
        if rk.is_custom:
            return to_dict(
                api.get_namespaced_custom_object(namespace=namespace, name=name, **self._custom_args(rk))
            )
        if not rk.namespaced:
            return to_dict(getattr(api, f"read_{rk.suffix}")(name=name))
        return to_dict(getattr(api, f"read_namespaced_{rk.suffix}")(name=name, namespace=namespace))

    def create(self, kind: str | ResourceKind, namespace: str, body: Mapping[str, Any]) -> dict[str, Any]:
        rk = resolve_kind(kind)
        body = with_type_meta(rk, body)
        api = self._api(rk)
        if rk.is_custom:
            return to_dict(
                api.create_namespaced_custom_object(namespace=namespace, body=body, **self._custom_args(rk))
            )
        if not rk.namespaced:
            return to_dict(getattr(api, f"create_{rk.suffix}")(body=body))
        return to_dict(getattr(api, f"create_namespaced_{rk.suffix}")(namespace=namespace, body=body))

    def replace(
        self, kind: str | ResourceKind, namespace: str, name: str, body: Mapping[str, Any]
    ) -> dict[str, Any]:
        rk = resolve_kind(kind)
        body = with_type_meta(rk, body)
        api = self._api(rk)
        if rk.is_custom:
            return to_dict(
                api.replace_namespaced_custom_object(
                    namespace=namespace, name=name, body=body, **self._custom_args(rk)
                )
            )
        if not rk.namespaced:
            return to_dict(getattr(api, f"replace_{rk.suffix}")(name=name, body=body))
        return to_dict(
            getattr(api, f"replace_namespaced_{rk.suffix}")(name=name, namespace=namespace, body=body)
        )

    def patch(
        self,
        kind: str | ResourceKind,
        namespace: str,
        name: str,
        body: Mapping[str, Any],
        *,
        strategic: bool = False,
    ) -> dict[str, Any]:
        """Partially update an object; JSON merge patch unless ``strategic`` is requested."""
        rk = resolve_kind(kind)
        api = self._api(rk)
        content_type = STRATEGIC_MERGE_PATCH if strategic and not rk.is_custom else MERGE_PATCH
        if rk.is_custom:
            return to_dict(
                api.patch_namespaced_custom_object(
                    namespace=namespace,
                    name=name,
                    body=body,
                    _content_type=content_type,
                    **self._custom_args(rk),
                )
            )
        if not rk.namespaced:
            return to_dict(getattr(api, f"patch_{rk.suffix}")(name=name, body=body, _content_type=content_type))
        return to_dict(
            getattr(api, f"patch_namespaced_{rk.suffix}")(
                name=name, namespace=namespace, body=body, _content_type=content_type
            )
        )

    def delete(self, kind: str | ResourceKind, namespace: str, name: str) -> None:
        rk = resolve_kind(kind)
        api = self._api(rk)
        if rk.is_custom:
            api.delete_namespaced_custom_object(namespace=namespace, name=name, **self._custom_args(rk))
        elif not rk.namespaced:
            getattr(api, f"delete_{rk.suffix}")(name=name)
        else:
            getattr(api, f"delete_namespaced_{rk.suffix}")(name=name, namespace=namespace)


def build_clients() -> ClusterClient:
    """Return a :class:`ClusterClient` using the active kube configuration."""
    return ClusterClient(
        core_api=client.CoreV1Api(),
        apps_api=client.AppsV1Api(),
        rbac_api=client.RbacAuthorizationV1Api(),
        networking_api=client.NetworkingV1Api(),
        custom_api=client.CustomObjectsApi(),
    )
