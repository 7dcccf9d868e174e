from __future__ import annotations

import copy
import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from paas_controller.src.errors import (
    PlanNotFoundError,
    ReconcileError,
    SkipReconcile,
    ValidationError,
    is_not_found,
    write_failed,
)
from paas_controller.src.events import REASON_IDENTITY_MISMATCH, REASON_PLAN_NOT_FOUND, EventRecorder
from paas_controller.src.informer import EventHandler
from paas_controller.src.kube import (
    ClusterClient,
    annotations_of,
    is_marked_for_deletion,
    name_of,
)
from paas_controller.src.plans import PlanResolver
from paas_controller.src.platform import (
    ANNOTATION_OWNER,
    ANNOTATION_ROLES,
    LABEL_CLUSTER_PLAN,
    NETWORK_POLICY_NAME,
    OWNER_ROLE_NAME,
    QUOTA_NAME,
    NamespaceIdentity,
    PlatformCatalog,
    prefixed,
)
from paas_controller.src.workqueue import ObjectKey

LOGGER = logging.getLogger(__name__)

KIND = "Namespace"
RBAC_GROUP = "rbac.authorization.k8s.io"
LABEL_PLATFORM_ROLE = prefixed("platform-role")


@dataclass(frozen=True)
class Owner:
    """The user a namespace was created for, decoded from ``paas.io/owner``."""

    username: str
    customer: str
    organization: str

    @classmethod
    def from_annotation(cls, raw: str) -> Owner:
        document = json.loads(raw)
        if not isinstance(document, dict):
            raise ValueError("owner annotation must be a JSON object")
        return cls(
            username=str(document.get("username") or ""),
            customer=str(document.get("customer") or ""),
            organization=str(document.get("org") or ""),
        )


def _role_binding(name: str, role_kind: str, username: str) -> dict[str, Any]:
    return {
        "metadata": {"name": name, "labels": {LABEL_PLATFORM_ROLE: "true"}},
        "roleRef": {"apiGroup": RBAC_GROUP, "kind": role_kind, "name": name},
        "subjects": [{"apiGroup": RBAC_GROUP, "kind": "User", "name": username}],
    }


class NamespaceProvisioner:
    """Provisions a tenant namespace: quota, platform role bindings, owner access and network policy.

    Every step is idempotent on its own, so a pass that failed half-way is
    simply re-run from the top. Broker namespaces (``system-org-<org>``) get
    owner access and the network policy only.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        plans: PlanResolver,
        recorder: EventRecorder,
        catalog: PlatformCatalog,
        *,
        quota_wait_timeout_seconds: float = 10.0,
        quota_poll_interval_seconds: float = 0.5,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cluster = cluster
        self.plans = plans
        self.recorder = recorder
        self.catalog = catalog
        self.quota_wait_timeout_seconds = quota_wait_timeout_seconds
        self.quota_poll_interval_seconds = quota_poll_interval_seconds
        self.sleep_fn = sleep_fn

    def reconcile(self, key: ObjectKey, namespace: dict[str, Any]) -> None:
        name = key.name
        identity = NamespaceIdentity.parse(name)
        if identity is None:
            raise SkipReconcile(f"{name} is not a platform namespace")
        if is_marked_for_deletion(namespace) or (namespace.get("status") or {}).get("phase") == "Terminating":
            raise SkipReconcile(f"{name} is terminating")

        annotations = annotations_of(namespace)
        raw_owner = annotations.get(ANNOTATION_OWNER)
        if not raw_owner:
            raise SkipReconcile(f"{name} has no owner identity")
        owner = self._validate_owner(namespace, identity, raw_owner)

        if not identity.is_system():
            try:
                plan = self.plans.resolve(identity, annotations.get(LABEL_CLUSTER_PLAN))
            except PlanNotFoundError as exc:
                self.recorder.warning(namespace, REASON_PLAN_NOT_FOUND, str(exc))
                raise
            self.ensure_quota(name, (plan.get("spec") or {}).get("hard"))
            if ANNOTATION_ROLES in annotations:
                authoritative = self.catalog.parse_roles(annotations[ANNOTATION_ROLES])
            else:
                authoritative = self.catalog.parse_roles((plan.get("spec") or {}).get("roles") or [])
            self.reconcile_role_bindings(name, owner.username, authoritative)

        self.ensure_owner_access(name, owner.username)
        self.ensure_network_policy(name)

    def cleanup(self, key: ObjectKey) -> None:
        LOGGER.debug("%s - namespace is gone, its objects go with it", key.name)

    def _validate_owner(self, namespace: dict[str, Any], identity: NamespaceIdentity, raw: str) -> Owner:
        try:
            owner = Owner.from_annotation(raw)
        except ValueError as exc:
            message = f"failed decoding owner identity: {exc}"
            self.recorder.warning(namespace, REASON_IDENTITY_MISMATCH, message)
            raise ValidationError(f"{identity.namespace}: {message}") from exc
        if owner.customer != identity.customer or owner.organization != identity.organization:
            message = (
                f"identity information mismatch. user-customer={owner.customer} user-org={owner.organization} "
                f"ns-customer={identity.customer} ns-org={identity.organization}"
            )
            self.recorder.warning(namespace, REASON_IDENTITY_MISMATCH, message)
            raise ValidationError(f"{identity.namespace}: {message}")
        if not owner.username:
            message = "owner identity has no username"
            self.recorder.warning(namespace, REASON_IDENTITY_MISMATCH, message)
            raise ValidationError(f"{identity.namespace}: {message}")
        return owner

    def ensure_quota(self, namespace: str, hard: Any) -> None:
        """Create or update ``ResourceQuota/default`` with the registered subset of ``hard``."""
        desired = self.catalog.filter_quota(hard)
        dropped = sorted(set(hard or {}) - set(desired)) if isinstance(hard, dict) else []
        if dropped:
            LOGGER.info("%s - stripping unregistered quota resources %s", namespace, dropped)

        target = f"{namespace}/ResourceQuota/{QUOTA_NAME}"
        existing = self._get("ResourceQuota", namespace, QUOTA_NAME, target)
        if existing is not None and is_marked_for_deletion(existing):
            self._wait_for_absence("ResourceQuota", namespace, QUOTA_NAME, target)
            existing = None

        if existing is None:
            body = {"metadata": {"name": QUOTA_NAME}, "spec": {"hard": desired}}
            try:
                self.cluster.create("ResourceQuota", namespace, body)
                LOGGER.info("%s - created resource quota", namespace)
            except ApiException as exc:
                raise write_failed(target, "creating resource quota", exc) from exc
            return

        if ((existing.get("spec") or {}).get("hard") or {}) == desired:
            return
        updated = copy.deepcopy(existing)
        updated.setdefault("spec", {})["hard"] = desired
        try:
            self.cluster.replace("ResourceQuota", namespace, QUOTA_NAME, updated)
            LOGGER.info("%s - updated resource quota", namespace)
        except ApiException as exc:
            raise write_failed(target, "updating resource quota", exc) from exc

    def _wait_for_absence(self, kind: str, namespace: str, name: str, target: str) -> None:
        deadline = time.monotonic() + self.quota_wait_timeout_seconds
        while time.monotonic() < deadline:
            if self._get(kind, namespace, name, target) is None:
                return
            self.sleep_fn(self.quota_poll_interval_seconds)
        raise ReconcileError(f"{target}: still terminating after {self.quota_wait_timeout_seconds}s")

    def reconcile_role_bindings(self, namespace: str, username: str, authoritative: Iterable[str]) -> None:
        """Make a RoleBinding exist for exactly the catalogue roles in ``authoritative``."""
        wanted = set(authoritative)
        for role in self.catalog.role_names:
            target = f"{namespace}/RoleBinding/{role}"
            if role in wanted:
                binding = _role_binding(role, "ClusterRole", username)
                self._ensure("RoleBinding", namespace, binding, ("subjects",), immutable=("roleRef",))
                continue
            try:
                self.cluster.delete("RoleBinding", namespace, role)
                LOGGER.info("%s - removed role binding %s", namespace, role)
            except ApiException as exc:
                if not is_not_found(exc):
                    raise write_failed(target, "deleting role binding", exc) from exc

    def ensure_owner_access(self, namespace: str, username: str) -> None:
        role = {
            "metadata": {"name": OWNER_ROLE_NAME},
            "rules": [
                {
                    "apiGroups": ["*"],
                    "resources": list(self.catalog.owner_resources),
                    "verbs": list(self.catalog.owner_verbs),
                }
            ],
        }
        self._ensure("Role", namespace, role, ("rules",))
        binding = _role_binding(OWNER_ROLE_NAME, "Role", username)
        self._ensure("RoleBinding", namespace, binding, ("subjects",), immutable=("roleRef",))

    def ensure_network_policy(self, namespace: str) -> None:
        """Deny ingress from everywhere but pods of the same namespace."""
        policy = {
            "metadata": {"name": NETWORK_POLICY_NAME},
            "spec": {
                "podSelector": {},
                "policyTypes": ["Ingress"],
                "ingress": [{"from": [{"podSelector": {}}]}],
            },
        }
        self._ensure("NetworkPolicy", namespace, policy, ("spec",))

    def _get(self, kind: str, namespace: str, name: str, target: str) -> dict[str, Any] | None:
        try:
            return self.cluster.get(kind, namespace, name)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise write_failed(target, f"reading {kind}", exc) from exc

    def _ensure(
        self,
        kind: str,
        namespace: str,
        body: dict[str, Any],
        compared: tuple[str, ...],
        immutable: tuple[str, ...] = (),
    ) -> None:
        """Read ``body``'s object and create it when missing.

        An existing object is replaced when a ``compared`` field differs and
        deleted and created again when an ``immutable`` field differs.
        """
        name = name_of(body)
        target = f"{namespace}/{kind}/{name}"
        existing = self._get(kind, namespace, name, target)
        if existing is not None and any(existing.get(field) != body.get(field) for field in immutable):
            try:
                self.cluster.delete(kind, namespace, name)
                LOGGER.info("%s - deleted %s %s to recreate it", namespace, kind, name)
            except ApiException as exc:
                if not is_not_found(exc):
                    raise write_failed(target, f"deleting {kind}", exc) from exc
            existing = None

        if existing is None:
            try:
                self.cluster.create(kind, namespace, body)
                LOGGER.info("%s - created %s %s", namespace, kind, name)
            except ApiException as exc:
                raise write_failed(target, f"creating {kind}", exc) from exc
            return

        if all(existing.get(field) == body.get(field) for field in compared):
            return
        updated = copy.deepcopy(existing)
        for field in compared:
            updated[field] = copy.deepcopy(body.get(field))
        try:
            self.cluster.replace(kind, namespace, name, updated)
            LOGGER.info("%s - repaired %s %s", namespace, kind, name)
        except ApiException as exc:
            raise write_failed(target, f"updating {kind}", exc) from exc


def namespace_handler(enqueue: Callable[[ObjectKey], None]) -> EventHandler:
    def on_add(namespace: dict[str, Any]) -> None:
        enqueue(ObjectKey(KIND, "", name_of(namespace)))

    def on_update(old: dict[str, Any], new: dict[str, Any]) -> None:
        enqueue(ObjectKey(KIND, "", name_of(new)))

    return EventHandler(on_add=on_add, on_update=on_update)
