from __future__ import annotations

import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from kubernetes.utils import parse_quantity

from paas_controller.src.errors import PlanNotFoundError
from paas_controller.src.informer import Store
from paas_controller.src.kube import labels_of, name_of, store_key
from paas_controller.src.platform import (
    LABEL_CLUSTER_PLAN,
    LABEL_DEFAULT,
    PLAN_TYPE_STORAGE,
    NamespaceIdentity,
)

LOGGER = logging.getLogger(__name__)


def plan_type(plan: Mapping[str, Any]) -> str:
    return str((plan.get("spec") or {}).get("type") or "")


def is_storage_plan(plan: Mapping[str, Any]) -> bool:
    return plan_type(plan) == PLAN_TYPE_STORAGE


def is_default_plan(plan: Mapping[str, Any]) -> bool:
    return labels_of(plan).get(LABEL_DEFAULT) == "true"


def plan_resources(plan: Mapping[str, Any]) -> dict[str, dict[str, str]]:
    """The plan's ``{limits, requests}`` in the shape a container expects."""
    return normalise_resources((plan.get("spec") or {}).get("resources"))


def normalise_resources(resources: Mapping[str, Any] | None) -> dict[str, dict[str, str]]:
    """Drop empty sections so ``{}`` and ``{"limits": {}}`` compare equal."""
    normalised: dict[str, dict[str, str]] = {}
    for section in ("limits", "requests"):
        values = (resources or {}).get(section) or {}
        if values:
            normalised[section] = {str(k): str(v) for k, v in values.items()}
    return normalised


def _quantity(value: str) -> Decimal | str:
    try:
        return parse_quantity(value)
    except ValueError:
        return value


def resources_equal(current: Mapping[str, Any] | None, desired: Mapping[str, Any] | None) -> bool:
    """Compare two resource requirements by quantity, so ``500m`` equals ``0.5``.

    Unparseable values fall back to a plain string comparison.
    """
    left, right = normalise_resources(current), normalise_resources(desired)
    if left.keys() != right.keys():
        return False
    for section, values in left.items():
        other = right[section]
        if values.keys() != other.keys():
            return False
        if any(_quantity(values[name]) != _quantity(other[name]) for name in values):
            return False
    return True


class PlanResolver:
    """Resolves the Plan governing a tenant from the Plan cache.

    Lookup order for compute plans:

    1. the explicitly referenced plan name (deployment label or namespace
       annotation);
    2. when no name is given, the ``clusterplan`` label of the plan marked
       ``default`` in the tenant's broker namespace (``system-org-<org>``);
    3. when the chosen name has no Plan in the platform namespace, the
       platform-wide default plan.

    Storage plans never take part in compute resolution.
    """

    def __init__(self, plans: Store, platform_namespace: str) -> None:
        self.plans = plans
        self.platform_namespace = platform_namespace

    def scope_default_name(self, identity: NamespaceIdentity) -> str:
        for plan in self.plans.list_namespace(identity.system_namespace):
            if is_default_plan(plan) and not is_storage_plan(plan):
                return labels_of(plan).get(LABEL_CLUSTER_PLAN) or name_of(plan)
        return ""

    def cluster_plan(self, name: str) -> dict[str, Any] | None:
        if not name:
            return None
        plan, exists = self.plans.get_by_key(store_key(self.platform_namespace, name))
        return plan if exists else None

    def cluster_default(self) -> dict[str, Any] | None:
        candidates = [
            plan
            for plan in self.plans.list_namespace(self.platform_namespace)
            if is_default_plan(plan) and not is_storage_plan(plan)
        ]
        if len(candidates) > 1:
            LOGGER.warning(
                "Found %d default plans in %s; using %s",
                len(candidates),
                self.platform_namespace,
                name_of(candidates[0]),
            )
        return candidates[0] if candidates else None

    def resolve(self, identity: NamespaceIdentity, plan_name: str | None) -> dict[str, Any]:
        """Return the cached compute Plan for a tenant or raise :class:`PlanNotFoundError`."""
        name = plan_name or self.scope_default_name(identity)
        if not name:
            LOGGER.debug("%s - no plan referenced and no default in %s", identity.namespace, identity.system_namespace)

        plan = self.cluster_plan(name)
        if plan is not None and not is_storage_plan(plan):
            return plan

        if name:
            LOGGER.debug("%s - plan %r not found, searching for a cluster default", identity.namespace, name)
        plan = self.cluster_default()
        if plan is None:
            raise PlanNotFoundError(
                f"{identity.namespace}: plan {name or '<default>'!r} not found and no cluster default plan exists"
            )
        return plan

    def storage_plan(self, name: str) -> dict[str, Any]:
        plan = self.cluster_plan(name)
        if plan is None or not is_storage_plan(plan):
            raise PlanNotFoundError(f"storage plan {name!r} not found in {self.platform_namespace}")
        return plan
