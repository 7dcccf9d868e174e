from __future__ import annotations

import base64
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
from kubernetes.client import ApiException

from paas_controller.src.errors import SkipReconcile, is_not_found, write_failed
from paas_controller.src.informer import EventHandler, Store
from paas_controller.src.kube import (
    ClusterClient,
    annotations_of,
    is_marked_for_deletion,
    name_of,
    namespace_of,
    store_key,
)
from paas_controller.src.metrics import METRICS
from paas_controller.src.platform import (
    ANNOTATION_SECRET_LAST_UPDATED,
    LABEL_SECRET_CONTROLLER,
    LABEL_TYPE,
    SYSTEM_SECRET_KEY,
    SYSTEM_SECRET_NAME,
    SYSTEM_TOKEN_TYPE,
    NamespaceIdentity,
    format_timestamp,
    parse_timestamp,
)
from paas_controller.src.workqueue import ObjectKey

LOGGER = logging.getLogger(__name__)

KIND = "Namespace"
SECRET_FIELD_SELECTOR = f"metadata.name={SYSTEM_SECRET_NAME}"
TOKEN_LIFETIME = timedelta(hours=1)


def system_token(secret: str, identity: NamespaceIdentity, now: datetime) -> str:
    """Mint the HS256 system token a namespace's build and runtime pods authenticate with."""
    payload = {
        "customer": identity.customer,
        "org": identity.organization,
        LABEL_TYPE: SYSTEM_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int((now + TOKEN_LIFETIME).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class SecretRotator:
    """Keeps a fresh system token Secret in every tenant namespace.

    A Secret refreshed within the freshness window is left alone, which
    keeps resyncs over thousands of namespaces from rewriting every Secret.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        secrets: Store,
        jwt_secret: str,
        *,
        freshness_minutes: int = 20,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.cluster = cluster
        self.secrets = secrets
        self.jwt_secret = jwt_secret
        self.freshness = timedelta(minutes=freshness_minutes)
        self.now_fn = now_fn

    def is_fresh(self, namespace: str, now: datetime) -> bool:
        secret, exists = self.secrets.get_by_key(store_key(namespace, SYSTEM_SECRET_NAME))
        if not exists or secret is None:
            return False
        raw = annotations_of(secret).get(ANNOTATION_SECRET_LAST_UPDATED)
        last_updated = parse_timestamp(raw)
        if last_updated is None:
            if raw:
                LOGGER.warning("%s - unparseable %s annotation %r", namespace, ANNOTATION_SECRET_LAST_UPDATED, raw)
            return False
        return last_updated + self.freshness > now

    def reconcile(self, key: ObjectKey, namespace: dict[str, Any]) -> None:
        name = key.name
        if is_marked_for_deletion(namespace):
            raise SkipReconcile(f"{name} is being deleted")
        identity = NamespaceIdentity.parse(name)
        if identity is None:
            raise SkipReconcile(f"{name} is not a platform namespace")

        now = self.now_fn()
        if self.is_fresh(name, now):
            LOGGER.debug("%s/%s - too soon for updating secret", name, SYSTEM_SECRET_NAME)
            return

        token = system_token(self.jwt_secret, identity, now)
        updated_at = format_timestamp(now)
        encoded = base64.b64encode(token.encode("utf-8")).decode("ascii")
        target = f"{name}/{SYSTEM_SECRET_NAME}"
        patch = {
            "metadata": {
                "labels": {LABEL_SECRET_CONTROLLER: "true"},
                "annotations": {ANNOTATION_SECRET_LAST_UPDATED: updated_at},
            },
            "data": {SYSTEM_SECRET_KEY: encoded},
            "type": "Opaque",
        }
        try:
            self.cluster.patch("Secret", name, SYSTEM_SECRET_NAME, patch, strategic=True)
            METRICS.secrets_rotated_total.inc()
            LOGGER.info("%s secret updated", target)
            return
        except ApiException as exc:
            if not is_not_found(exc):
                raise write_failed(target, "updating system token secret", exc) from exc

        body = {
            "metadata": {"name": SYSTEM_SECRET_NAME, "namespace": name, **patch["metadata"]},
            "data": patch["data"],
            "type": "Opaque",
        }
        try:
            self.cluster.create("Secret", name, body)
        except ApiException as exc:
            raise write_failed(target, "creating system token secret", exc) from exc
        METRICS.secrets_rotated_total.inc()
        LOGGER.info("%s secret created", target)

    def cleanup(self, key: ObjectKey) -> None:
        LOGGER.debug("%s - namespace is gone, its secret goes with it", key.name)


def namespace_handler(enqueue: Callable[[ObjectKey], None]) -> EventHandler:
    def _enqueue(namespace: dict[str, Any]) -> None:
        enqueue(ObjectKey(KIND, "", name_of(namespace)))

    return EventHandler(on_add=_enqueue, on_update=lambda old, new: _enqueue(new))


def secret_handler(enqueue: Callable[[ObjectKey], None]) -> EventHandler:
    """A changed or deleted system Secret re-checks its namespace."""

    def _enqueue(secret: dict[str, Any]) -> None:
        if name_of(secret) == SYSTEM_SECRET_NAME:
            enqueue(ObjectKey(KIND, "", namespace_of(secret)))

    return EventHandler(on_update=lambda old, new: _enqueue(new), on_delete=_enqueue)
