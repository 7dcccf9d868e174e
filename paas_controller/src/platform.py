from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml

LOGGER = logging.getLogger(__name__)

PREFIX = "paas.io"
GROUP = "platform.paas.io"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"

BROKER_SYSTEM_NAMESPACE = "system"
BROKER_SYSTEM_CUSTOMER = "org"

SYSTEM_SECRET_NAME = "paas-system-token"
SYSTEM_SECRET_KEY = "token.jwt"
SYSTEM_TOKEN_TYPE = "system"

ANNOTATION_SECRET_LAST_UPDATED = "secret.paas.io/updated-at"
LABEL_SECRET_CONTROLLER = "secret.paas.io/managed"

PLAN_TYPE_DEFAULT = ""
PLAN_TYPE_STORAGE = "Storage"

GITHUB_SOURCE = "github"
BUILD_POD_TYPE = "slugbuild"
RELEASE_EXPIRE_MINUTES = 20

OWNER_ROLE_NAME = "tenant-owner"
QUOTA_NAME = "default"
NETWORK_POLICY_NAME = "default-deny"

_SHA_RE = re.compile(r"^[\da-f]{40}$")
_SHORT_SHA = 8


def prefixed(key: str) -> str:
    """Return ``key`` qualified with the platform prefix (``paas.io/<key>``)."""
    return f"{PREFIX}/{key}"


LABEL_CLUSTER_PLAN = prefixed("clusterplan")
LABEL_STORAGE_PLAN = prefixed("storage-plan")
LABEL_DEFAULT = prefixed("default")
LABEL_DEPLOY = prefixed("deploy")
LABEL_GIT_REVISION = prefixed("gitrevision")
LABEL_BUILD_STATUS = prefixed("build-status")
LABEL_TYPE = prefixed("type")
LABEL_APP = prefixed("app")

ANNOTATION_OWNER = prefixed("owner")
ANNOTATION_ROLES = prefixed("roles")
ANNOTATION_GIT_REMOTE = prefixed("gitremote")
ANNOTATION_GIT_REPOSITORY = prefixed("gitrepository")
ANNOTATION_GIT_REVISION = prefixed("gitrevision")
ANNOTATION_GIT_BRANCH = prefixed("gitbranch")
ANNOTATION_AUTH_TOKEN = prefixed("authtoken")
ANNOTATION_BUILD_SOURCE = prefixed("source")
ANNOTATION_BUILD = prefixed("build")
ANNOTATION_BUILD_REVISION = prefixed("buildrevision")
ANNOTATION_AUTO_DEPLOY = prefixed("autodeploy")
ANNOTATION_SETUP_STORAGE = prefixed("setup-storage")
ANNOTATION_DEPLOYED_REVISION = prefixed("deployed-revision")
ANNOTATION_RELEASE_NAME = prefixed("releasename")


@dataclass(frozen=True)
class NamespaceIdentity:
    """The ``name-customer-organization`` triple every tenant namespace carries."""

    name: str
    customer: str
    organization: str

    @classmethod
    def parse(cls, namespace: str | None) -> NamespaceIdentity | None:
        """Return the identity for ``namespace`` or ``None`` when it isn't a platform namespace."""
        if not namespace:
            return None
        parts = namespace.split("-")
        if len(parts) != 3 or not all(parts):
            return None
        return cls(name=parts[0], customer=parts[1], organization=parts[2])

    @property
    def namespace(self) -> str:
        return f"{self.name}-{self.customer}-{self.organization}"

    @property
    def system_namespace(self) -> str:
        """The broker namespace holding the organization's scoped plans."""
        return f"{BROKER_SYSTEM_NAMESPACE}-{BROKER_SYSTEM_CUSTOMER}-{self.organization}"

    def is_system(self) -> bool:
        return self.name == BROKER_SYSTEM_NAMESPACE and self.customer == BROKER_SYSTEM_CUSTOMER


@dataclass(frozen=True)
class PlatformRole:
    name: str
    rules: tuple[Mapping[str, Any], ...]

    def cluster_role(self) -> dict[str, Any]:
        return {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRole",
            "metadata": {"name": self.name, "labels": {prefixed("platform-role"): "true"}},
            "rules": [dict(rule) for rule in self.rules],
        }


def _rule(resources: Iterable[str], verbs: Iterable[str], groups: Iterable[str] = ("*",)) -> dict[str, Any]:
    return {"apiGroups": list(groups), "resources": list(resources), "verbs": list(verbs)}


DEFAULT_ROLES: tuple[PlatformRole, ...] = (
    PlatformRole("exec-allow", (_rule(["pods/exec"], ["get", "create"]),)),
    PlatformRole("portforward-allow", (_rule(["pods/portforward"], ["get", "create"]),)),
    PlatformRole("autoscale-allow", (_rule(["horizontalpodautoscalers"], ["get", "create"]),)),
    PlatformRole("attach-allow", (_rule(["pods/attach"], ["get", "create"]),)),
    PlatformRole(
        "addon-management",
        (_rule(["addons"], ["get", "watch", "list", "create", "update", "delete"], [GROUP]),),
    ),
)

DEFAULT_QUOTA_RESOURCES: frozenset[str] = frozenset(
    {
        "pods",
        "requests.cpu",
        "requests.memory",
        "limits.cpu",
        "limits.memory",
        "requests.storage",
        "persistentvolumeclaims",
        "services",
        "services.loadbalancers",
        "services.nodeports",
        "configmaps",
        "secrets",
        "replicationcontrollers",
    }
)

DEFAULT_OWNER_VERBS = (
    "get", "watch", "list", "exec", "port-forward", "logs", "scale",
    "attach", "create", "describe", "delete", "update",
)
DEFAULT_OWNER_RESOURCES = (
    "pods", "deployments", "namespaces", "replicasets",
    "resourcequotas", "horizontalpodautoscalers",
)


@dataclass(frozen=True)
class PlatformCatalog:
    """Platform-wide role and quota-resource catalogue.

    Built once at startup and handed to every reconciler that needs it, so
    tests can inject their own catalogue.
    """

    roles: tuple[PlatformRole, ...] = DEFAULT_ROLES
    quota_resources: frozenset[str] = DEFAULT_QUOTA_RESOURCES
    owner_verbs: tuple[str, ...] = DEFAULT_OWNER_VERBS
    owner_resources: tuple[str, ...] = DEFAULT_OWNER_RESOURCES
    _role_names: frozenset[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_role_names", frozenset(role.name for role in self.roles))

    @property
    def role_names(self) -> tuple[str, ...]:
        return tuple(role.name for role in self.roles)

    def is_registered_role(self, name: str) -> bool:
        return name in self._role_names

    def parse_roles(self, raw: str | Iterable[str] | None) -> frozenset[str]:
        """Parse a comma separated (or iterable) role list, dropping unregistered names."""
        if raw is None:
            return frozenset()
        values = raw.split(",") if isinstance(raw, str) else raw
        return frozenset(
            role for role in (str(value).strip() for value in values) if self.is_registered_role(role)
        )

    def filter_quota(self, hard: Mapping[str, Any] | None) -> dict[str, str]:
        """Strip resource names the platform does not register for quotas."""
        if not isinstance(hard, Mapping):
            return {}
        return {str(k): str(v) for k, v in hard.items() if k in self.quota_resources}


def load_catalog(path: str | Path | None) -> PlatformCatalog:
    """Load the catalogue from a YAML file, or return the built-in one when ``path`` is empty.

    Expected document shape::

        roles:
          exec-allow:
            - {apiGroups: ["*"], resources: [pods/exec], verbs: [get, create]}
        quotaResources: [pods, requests.cpu]
        owner:
          verbs: [get, list]
          resources: [pods]
    """
    if not path:
        return PlatformCatalog()

    document = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(document, dict):
        raise ValueError(f"platform catalog {path} must be a mapping")

    kwargs: dict[str, Any] = {}
    raw_roles = document.get("roles")
    if raw_roles is not None:
        if not isinstance(raw_roles, dict):
            raise ValueError("platform catalog 'roles' must map role names to rule lists")
        kwargs["roles"] = tuple(
            PlatformRole(str(name), tuple(dict(rule) for rule in (rules or [])))
            for name, rules in raw_roles.items()
        )
    raw_resources = document.get("quotaResources")
    if raw_resources is not None:
        kwargs["quota_resources"] = frozenset(str(r) for r in raw_resources)
    owner = document.get("owner") or {}
    if owner.get("verbs"):
        kwargs["owner_verbs"] = tuple(str(v) for v in owner["verbs"])
    if owner.get("resources"):
        kwargs["owner_resources"] = tuple(str(r) for r in owner["resources"])

    catalog = PlatformCatalog(**kwargs)
    LOGGER.info(
        "Loaded platform catalog from %s (%d roles, %d quota resources)",
        path,
        len(catalog.roles),
        len(catalog.quota_resources),
    )
    return catalog


@dataclass(frozen=True)
class GitSha:
    full: str

    @classmethod
    def parse(cls, raw: str | None) -> GitSha:
        if not raw or not _SHA_RE.match(raw):
            raise ValueError(f"git sha {raw!r} is invalid")
        return cls(full=raw)

    @property
    def short(self) -> str:
        return self.full[:_SHORT_SHA]


@dataclass(frozen=True)
class SlugPaths:
    """Object storage layout for a build: ``<namespace>/<deploy>/<prefix>/<revision>``."""

    namespace: str
    deploy_name: str
    prefix: str
    revision: str

    @property
    def push_key(self) -> str:
        return "/".join(p.strip("/") for p in (self.namespace, self.deploy_name, self.prefix, self.revision) if p)

    @property
    def tar_key(self) -> str:
        return f"{self.push_key}/slug.tgz"


def release_revision(spec: Mapping[str, Any]) -> str:
    """The artifact revision of a release: its git sha when known, else ``v<buildRevision>``."""
    git_revision = spec.get("gitRevision")
    if git_revision:
        return str(git_revision)
    return f"v{spec.get('buildRevision', '0')}"


def git_clone_url(spec: Mapping[str, Any]) -> str:
    """Return the URL a build pod clones from.

    Webhook sources already carry an authenticated remote; every other source
    gets the release token injected as basic-auth userinfo.
    """
    remote = str(spec.get("gitRemote") or "")
    if spec.get("source") == GITHUB_SOURCE:
        return remote
    parts = urlsplit(remote)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"git remote {remote!r} is not an absolute URL")
    repository = str(spec.get("gitRepository") or "").strip("/")
    host = parts.netloc.rsplit("@", 1)[-1]
    return f"{parts.scheme}://jwt:{spec.get('authToken', '')}@{host}/{repository}.git"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 timestamp (``2024-01-15T08:30:00Z``) into an aware datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def release_expired(release: Mapping[str, Any], now: datetime, default_minutes: int = RELEASE_EXPIRE_MINUTES) -> bool:
    """True once ``creationTimestamp + expireAfter`` minutes lies in the past.

    A release without a parseable creation time is treated as expired so it can
    never be auto-deployed by accident.
    """
    created = parse_timestamp((release.get("metadata") or {}).get("creationTimestamp"))
    if created is None:
        return True
    minutes = (release.get("spec") or {}).get("expireAfter") or default_minutes
    return created + timedelta(minutes=int(minutes)) < now
