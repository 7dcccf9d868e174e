from __future__ import annotations

import os
from dataclasses import dataclass, field

from paas_controller.src.platform import RELEASE_EXPIRE_MINUTES


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name, default).strip()
    if not value:
        raise ValueError(f"{name} must be a non-empty string")
    return value


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool = True
    namespace: str = "paas-system"
    lease_name: str = "paas-controller-leader"
    identity: str = ""
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    stop_timeout_seconds: int = 45


@dataclass(frozen=True)
class ControllerConfig:
    """Runtime settings of the controller manager, read once from the environment."""

    jwt_secret: str
    platform_namespace: str = "paas-system"
    workers: int = 2
    resync_seconds: int = 300
    cache_sync_timeout_seconds: int = 120
    max_retries: int = 10
    watch_timeout_seconds: int = 300
    slugbuilder_image: str = "quay.io/paas/slugbuilder:v0.1.0"
    slugrunner_image: str = "quay.io/paas/slugrunner:v0.1.0"
    object_store_url: str = "http://object-store.paas-system.svc.cluster.local:9000"
    release_path_prefix: str = "release"
    debug_build: bool = False
    release_expire_minutes: int = RELEASE_EXPIRE_MINUTES
    secret_freshness_minutes: int = 20
    health_port: int = 8080
    catalog_path: str | None = None
    leader_election: LeaderElectionConfig = field(default_factory=LeaderElectionConfig)


def load_config() -> ControllerConfig:
    """Build a :class:`ControllerConfig` from environment variables.

    ``PLATFORM_JWT_SECRET`` is required; every other variable has a default.
    Invalid values raise ``ValueError`` naming the offending variable.
    """
    jwt_secret = os.getenv("PLATFORM_JWT_SECRET", "")
    if not jwt_secret:
        raise ValueError("PLATFORM_JWT_SECRET must be set")

    platform_namespace = _env_str("PLATFORM_NAMESPACE", "paas-system")

    lease_duration_seconds = env_int("LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1)
    renew_deadline_seconds = env_int("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1)
    retry_period_seconds = env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)
    if renew_deadline_seconds >= lease_duration_seconds:
        raise ValueError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period_seconds >= renew_deadline_seconds:
        raise ValueError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    leader_election = LeaderElectionConfig(
        enabled=parse_bool_env("LEADER_ELECTION_ENABLED", default=True),
        namespace=os.getenv("LEADER_ELECTION_NAMESPACE", platform_namespace),
        lease_name=_env_str("LEADER_ELECTION_LEASE_NAME", "paas-controller-leader"),
        identity=os.getenv("LEADER_ELECTION_IDENTITY", ""),
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
        # Must exceed the watch timeout so a leadership handoff never overlaps
        # two sets of watch loops.
        stop_timeout_seconds=env_int("LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1),
    )

    return ControllerConfig(
        jwt_secret=jwt_secret,
        platform_namespace=platform_namespace,
        workers=env_int("WORKERS", 2, minimum=1, maximum=64),
        resync_seconds=env_int("RESYNC_SECONDS", 300, minimum=0),
        cache_sync_timeout_seconds=env_int("CACHE_SYNC_TIMEOUT_SECONDS", 120, minimum=1),
        max_retries=env_int("MAX_RETRIES", 10, minimum=0),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 300, minimum=1),
        slugbuilder_image=_env_str("SLUGBUILDER_IMAGE", ControllerConfig.slugbuilder_image),
        slugrunner_image=_env_str("SLUGRUNNER_IMAGE", ControllerConfig.slugrunner_image),
        object_store_url=_env_str("OBJECT_STORE_URL", ControllerConfig.object_store_url),
        release_path_prefix=_env_str("RELEASE_PATH_PREFIX", ControllerConfig.release_path_prefix),
        debug_build=parse_bool_env("DEBUG_BUILD"),
        release_expire_minutes=env_int("RELEASE_EXPIRE_MINUTES", RELEASE_EXPIRE_MINUTES, minimum=1),
        secret_freshness_minutes=env_int("SECRET_FRESHNESS_MINUTES", 20, minimum=0),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535),
        catalog_path=os.getenv("PLATFORM_CATALOG_PATH") or None,
        leader_election=leader_election,
    )
