from __future__ import annotations

import logging

from kubernetes.client import ApiException

from paas_controller.src.errors import is_already_exists
from paas_controller.src.kube import ClusterClient, resource_version_of
from paas_controller.src.platform import PlatformCatalog

LOGGER = logging.getLogger(__name__)


def install_cluster_roles(cluster: ClusterClient, catalog: PlatformCatalog) -> None:
    """Create (or overwrite) one ClusterRole per catalogue role.

    Called once at startup; any failure propagates and aborts the process,
    since role bindings would otherwise point at missing roles.
    """
    for role in catalog.roles:
        body = role.cluster_role()
        try:
            cluster.create("ClusterRole", "", body)
            LOGGER.info("Cluster role %s provisioned", role.name)
            continue
        except ApiException as exc:
            if not is_already_exists(exc):
                raise

        existing = cluster.get("ClusterRole", "", role.name)
        body["metadata"]["resourceVersion"] = resource_version_of(existing)
        cluster.replace("ClusterRole", "", role.name, body)
        LOGGER.info("Cluster role %s updated", role.name)
