from __future__ import annotations

import copy
from datetime import timedelta
from typing import Any

import pytest

from paas_controller.src.build import BuildController, build_pod_name, release_handler
from paas_controller.src.deployer import DeployerController, build_phase, pod_handler
from paas_controller.src.errors import ReconcileError, SkipReconcile, TerminalError, ValidationError
from paas_controller.src.events import EventRecorder
from paas_controller.src.platform import (
    ANNOTATION_AUTO_DEPLOY,
    ANNOTATION_BUILD,
    ANNOTATION_BUILD_REVISION,
    ANNOTATION_DEPLOYED_REVISION,
    ANNOTATION_GIT_REMOTE,
    ANNOTATION_GIT_REPOSITORY,
    ANNOTATION_GIT_REVISION,
    ANNOTATION_RELEASE_NAME,
    LABEL_BUILD_STATUS,
    LABEL_GIT_REVISION,
)
from paas_controller.src.release import ReleaseController, deployment_handler
from paas_controller.src.workqueue import ObjectKey
from paas_controller.tests.fakes import NOW, FakeCluster, make_deployment, store_of

NS = "app-acme-co"
SHA = "3f786850e387550fdab836ed7e6dc881de23001b"
OBJECT_STORE = "http://objects.local:9000"

BUILD_ANNOTATIONS = {
    ANNOTATION_GIT_REMOTE: "https://git.example",
    ANNOTATION_GIT_REPOSITORY: "acme/app",
    ANNOTATION_BUILD_REVISION: "1",
    ANNOTATION_BUILD: "true",
}


def _deployment(**annotations: str) -> dict[str, Any]:
    return make_deployment(annotations={**BUILD_ANNOTATIONS, **annotations})


def _release_controller(cluster: FakeCluster) -> ReleaseController:
    return ReleaseController(cluster, EventRecorder(cluster, "test"), release_expire_minutes=20)


def _build_controller(cluster: FakeCluster, debug: bool = False) -> BuildController:
    return BuildController(cluster, slugbuilder_image="slugbuilder:test", path_prefix="release", debug_build=debug)


def _deployer(cluster: FakeCluster, releases: list[dict[str, Any]], deployments: list[dict[str, Any]], minutes: int = 5) -> DeployerController:
    return DeployerController(
        cluster,
        EventRecorder(cluster, "test"),
        store_of(*releases),
        store_of(*deployments),
        slugrunner_image="slugrunner:test",
        object_store_url=OBJECT_STORE + "/",
        path_prefix="release",
        now_fn=lambda: NOW + timedelta(minutes=minutes),
    )


def _pod(phase: str = "Succeeded", release: str | None = "app-v1", exit_code: int | None = None) -> dict[str, Any]:
    pod: dict[str, Any] = {
        "kind": "Pod",
        "metadata": {"name": "sb-app-v1", "namespace": NS, "annotations": {}, "labels": {"paas.io/type": "slugbuild"}},
        "status": {"phase": phase},
    }
    if release is not None:
        pod["metadata"]["annotations"][ANNOTATION_RELEASE_NAME] = release
    if exit_code is not None:
        pod["status"]["containerStatuses"] = [{"state": {"terminated": {"exitCode": exit_code}}}]
    return pod


def _release(cluster: FakeCluster, auto_deploy: bool = True) -> dict[str, Any]:
    deployment = _deployment(**({ANNOTATION_AUTO_DEPLOY: "true"} if auto_deploy else {}))
    cluster.seed("Deployment", deployment)
    _release_controller(cluster).reconcile(ObjectKey("Deployment", NS, "app"), deployment)
    release = cluster.find("Release", NS, "app-v1")
    assert release is not None
    return release


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------


def test_build_request_creates_release_and_clears_flag() -> None:
    cluster = FakeCluster()
    deployment = _deployment(**{ANNOTATION_GIT_REVISION: SHA, ANNOTATION_AUTO_DEPLOY: "true"})
    cluster.seed("Deployment", deployment)

    _release_controller(cluster).reconcile(ObjectKey("Deployment", NS, "app"), deployment)

    release = cluster.find("Release", NS, "app-v1")
    assert release is not None
    assert release["metadata"]["labels"] == {"paas.io/deploy": "app", LABEL_GIT_REVISION: SHA[:8]}
    spec = release["spec"]
    assert spec["gitRemote"] == "https://git.example"
    assert spec["gitRepository"] == "acme/app"
    assert spec["buildRevision"] == "1"
    assert spec["deployName"] == "app"
    assert spec["autoDeploy"] is True
    assert spec["build"] is True
    assert spec["expireAfter"] == 20

    stored = cluster.find("Deployment", NS, "app")
    assert stored is not None and stored["metadata"]["annotations"][ANNOTATION_BUILD] == "false"
    assert [w[0] for w in cluster.writes] == ["create", "patch"]


def test_retry_after_failed_flag_patch_does_not_duplicate_release() -> None:
    cluster = FakeCluster()
    deployment = _deployment()
    cluster.seed("Deployment", deployment)
    cluster.fail("patch", "Deployment", 500)
    controller = _release_controller(cluster)

    with pytest.raises(ReconcileError, match="deactivating deployment build"):
        controller.reconcile(ObjectKey("Deployment", NS, "app"), deployment)
    controller.reconcile(ObjectKey("Deployment", NS, "app"), deployment)

    assert len(cluster.of_kind("Release")) == 1
    stored = cluster.find("Deployment", NS, "app")
    assert stored is not None and stored["metadata"]["annotations"][ANNOTATION_BUILD] == "false"


def test_missing_build_keys_is_terminal() -> None:
    cluster = FakeCluster()
    deployment = make_deployment(annotations={ANNOTATION_BUILD: "true", ANNOTATION_GIT_REMOTE: "https://git.example"})

    with pytest.raises(TerminalError):
        _release_controller(cluster).reconcile(ObjectKey("Deployment", NS, "app"), deployment)

    events = cluster.events("MissingKeys")
    assert len(events) == 1
    assert "paas.io/gitrepository" in events[0]["message"]
    assert cluster.of_kind("Release") == []


def test_malformed_git_revision_is_rejected() -> None:
    deployment = _deployment(**{ANNOTATION_GIT_REVISION: "main"})

    with pytest.raises(ValidationError):
        _release_controller(FakeCluster()).reconcile(ObjectKey("Deployment", NS, "app"), deployment)


def test_deployment_without_build_request_is_skipped() -> None:
    deployment = _deployment(**{ANNOTATION_BUILD: "false"})

    with pytest.raises(SkipReconcile):
        _release_controller(FakeCluster()).reconcile(ObjectKey("Deployment", NS, "app"), deployment)


def test_release_handler_filters_build_requests() -> None:
    keys: list[ObjectKey] = []
    handler = deployment_handler(keys.append)
    assert handler.on_add is not None

    handler.on_add(make_deployment())
    handler.on_add(_deployment())

    assert keys == [ObjectKey("Deployment", NS, "app")]


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------


def test_release_launches_build_pod_and_clears_build_flag() -> None:
    cluster = FakeCluster()
    release = _release(cluster)

    _build_controller(cluster, debug=True).reconcile(ObjectKey("Release", NS, "app-v1"), release)

    pod = cluster.find("Pod", NS, "sb-app-v1")
    assert pod is not None
    assert pod["metadata"]["labels"]["paas.io/type"] == "slugbuild"
    assert pod["metadata"]["annotations"] == {ANNOTATION_RELEASE_NAME: "app-v1"}
    assert pod["spec"]["restartPolicy"] == "Never"
    container = pod["spec"]["containers"][0]
    assert container["image"] == "slugbuilder:test"
    env = {item["name"]: item.get("value") for item in container["env"]}
    assert env["GIT_CLONE_URL"] == "https://jwt:@git.example/acme/app.git"
    assert env["PUT_PATH"] == f"{NS}/app/release/v1"
    assert env["POD_NAME"] == "sb-app-v1"
    assert env["DEBUG"] == "TRUE"
    auth = next(item for item in container["env"] if item["name"] == "AUTH_TOKEN")
    assert auth["valueFrom"]["secretKeyRef"] == {"name": "paas-system-token", "key": "token.jwt"}

    stored = cluster.find("Release", NS, "app-v1")
    assert stored is not None and stored["spec"]["build"] is False


def test_existing_build_pod_is_not_duplicated() -> None:
    cluster = FakeCluster()
    release = _release(cluster)
    controller = _build_controller(cluster)
    controller.reconcile(ObjectKey("Release", NS, "app-v1"), release)

    controller.reconcile(ObjectKey("Release", NS, "app-v1"), release)

    assert len(cluster.of_kind("Pod")) == 1
    assert len(cluster.writes_of("patch", "Release")) == 2


def test_release_without_pending_build_is_skipped() -> None:
    cluster = FakeCluster()
    release = _release(cluster)
    release["spec"]["build"] = False

    with pytest.raises(SkipReconcile):
        _build_controller(cluster).reconcile(ObjectKey("Release", NS, "app-v1"), release)


def test_build_pod_name_is_bounded_and_deterministic() -> None:
    long_name = build_pod_name("a" * 80, "12")

    assert len(long_name) <= 63
    assert long_name == build_pod_name("a" * 80, "12")
    assert long_name != build_pod_name("a" * 80, "13")
    assert build_pod_name("app", "1") == "sb-app-v1"


def test_build_release_handler_filters_pending_builds() -> None:
    keys: list[ObjectKey] = []
    handler = release_handler(keys.append)
    assert handler.on_add is not None

    handler.on_add({"metadata": {"name": "done", "namespace": NS}, "spec": {"build": False}})
    handler.on_add({"metadata": {"name": "app-v1", "namespace": NS}, "spec": {"build": True}})

    assert keys == [ObjectKey("Release", NS, "app-v1")]


# ---------------------------------------------------------------------------
# Deploy
# ---------------------------------------------------------------------------


def test_successful_build_is_deployed_once() -> None:
    cluster = FakeCluster()
    release = _release(cluster)
    deployment = cluster.find("Deployment", NS, "app")
    assert deployment is not None
    deployer = _deployer(cluster, [release], [deployment])

    deployer.reconcile(ObjectKey("Pod", NS, "sb-app-v1"), _pod())

    stored = cluster.find("Deployment", NS, "app")
    assert stored is not None
    assert stored["metadata"]["annotations"][ANNOTATION_DEPLOYED_REVISION] == "v1"
    assert stored["spec"]["paused"] is False
    container = stored["spec"]["template"]["spec"]["containers"][0]
    assert container["image"] == "slugrunner:test"
    assert container["args"] == ["start", "web"]
    assert container["env"][0] == {"name": "SLUG_URL", "value": f"{OBJECT_STORE}/{NS}/app/release/v1/slug.tgz"}
    stamped = cluster.find("Release", NS, "app-v1")
    assert stamped is not None and stamped["metadata"]["labels"][LABEL_BUILD_STATUS] == "Succeeded"
    assert len(cluster.events("Deployed")) == 1

    deployed = _deployer(cluster, [stamped], [stored])
    cluster.writes.clear()
    deployed.reconcile(ObjectKey("Pod", NS, "sb-app-v1"), _pod())

    assert cluster.writes == []


def _stored(cluster: FakeCluster, kind: str, name: str) -> dict[str, Any]:
    obj = cluster.find(kind, NS, name)
    assert obj is not None
    return obj


def _revision(cluster: FakeCluster) -> str | None:
    return _stored(cluster, "Deployment", "app")["metadata"]["annotations"].get(ANNOTATION_DEPLOYED_REVISION)


def test_resync_of_an_older_build_does_not_roll_back() -> None:
    cluster = FakeCluster()
    v1 = _release(cluster)
    v2 = copy.deepcopy(v1)
    v2["metadata"]["name"] = "app-v2"
    v2["metadata"].get("labels", {}).pop(LABEL_BUILD_STATUS, None)
    v2["spec"]["buildRevision"] = "2"
    cluster.seed("Release", v2)

    deployment = cluster.find("Deployment", NS, "app")
    assert deployment is not None
    _deployer(cluster, [v1], [deployment]).reconcile(ObjectKey("Pod", NS, "sb-app-v1"), _pod())
    assert _revision(cluster) == "v1"

    releases = [_stored(cluster, "Release", "app-v1"), _stored(cluster, "Release", "app-v2")]
    deployment = _stored(cluster, "Deployment", "app")
    _deployer(cluster, releases, [deployment]).reconcile(ObjectKey("Pod", NS, "sb-app-v2"), _pod(release="app-v2"))
    assert _revision(cluster) == "v2"

    releases = [_stored(cluster, "Release", "app-v1"), _stored(cluster, "Release", "app-v2")]
    deployment = _stored(cluster, "Deployment", "app")
    cluster.writes.clear()
    _deployer(cluster, releases, [deployment], minutes=8).reconcile(ObjectKey("Pod", NS, "sb-app-v1"), _pod())

    assert _revision(cluster) == "v2"
    assert cluster.writes == []
    assert len(cluster.events("Deployed")) == 2


def test_failed_deploy_patch_is_retried() -> None:
    cluster = FakeCluster()
    release = _release(cluster)
    deployment = cluster.find("Deployment", NS, "app")
    assert deployment is not None
    cluster.fail("patch", "Deployment", 500)

    with pytest.raises(ReconcileError, match="deploying release"):
        _deployer(cluster, [release], [deployment]).reconcile(ObjectKey("Pod", NS, "sb-app-v1"), _pod())

    unstamped = cluster.find("Release", NS, "app-v1")
    assert unstamped is not None
    assert LABEL_BUILD_STATUS not in unstamped["metadata"].get("labels", {})

    _deployer(cluster, [unstamped], [deployment]).reconcile(ObjectKey("Pod", NS, "sb-app-v1"), _pod())

    assert _revision(cluster) == "v1"
    stamped = cluster.find("Release", NS, "app-v1")
    assert stamped is not None and stamped["metadata"]["labels"][LABEL_BUILD_STATUS] == "Succeeded"


def test_deploy_keeps_allocated_resources() -> None:
    cluster = FakeCluster()
    release = _release(cluster)
    resources = {"limits": {"cpu": "500m"}}
    deployment = cluster.find("Deployment", NS, "app")
    assert deployment is not None
    deployment["spec"]["template"]["spec"]["containers"][0]["resources"] = resources
    cluster.seed("Deployment", deployment)

    _deployer(cluster, [release], [deployment]).reconcile(ObjectKey("Pod", NS, "sb-app-v1"), _pod())

    stored = cluster.find("Deployment", NS, "app")
    assert stored is not None
    assert stored["spec"]["template"]["spec"]["containers"][0]["resources"] == resources


def test_failed_build_is_reported_once_and_never_deployed() -> None:
    cluster = FakeCluster()
    release = _release(cluster)
    deployment = cluster.find("Deployment", NS, "app")
    assert deployment is not None

    _deployer(cluster, [release], [deployment]).reconcile(ObjectKey("Pod", NS, "sb-app-v1"), _pod("Running", exit_code=1))
    stamped = cluster.find("Release", NS, "app-v1")
    assert stamped is not None
    _deployer(cluster, [stamped], [deployment]).reconcile(ObjectKey("Pod", NS, "sb-app-v1"), _pod("Failed"))

    assert stamped["metadata"]["labels"][LABEL_BUILD_STATUS] == "Failed"
    assert len(cluster.events("BuildFailed")) == 1
    stored = cluster.find("Deployment", NS, "app")
    assert stored is not None and ANNOTATION_DEPLOYED_REVISION not in stored["metadata"]["annotations"]


def test_expired_release_is_not_deployed() -> None:
    cluster = FakeCluster()
    release = _release(cluster)
    deployment = cluster.find("Deployment", NS, "app")
    assert deployment is not None

    _deployer(cluster, [release], [deployment], minutes=21).reconcile(ObjectKey("Pod", NS, "sb-app-v1"), _pod())

    assert len(cluster.events("ReleaseExpired")) == 1
    stored = cluster.find("Deployment", NS, "app")
    assert stored is not None and ANNOTATION_DEPLOYED_REVISION not in stored["metadata"]["annotations"]


def test_release_without_auto_deploy_only_gets_status() -> None:
    cluster = FakeCluster()
    release = _release(cluster, auto_deploy=False)
    deployment = cluster.find("Deployment", NS, "app")
    assert deployment is not None

    _deployer(cluster, [release], [deployment]).reconcile(ObjectKey("Pod", NS, "sb-app-v1"), _pod())

    assert len(cluster.writes_of("patch", "Deployment")) == 1
    stored = cluster.find("Deployment", NS, "app")
    assert stored is not None and ANNOTATION_DEPLOYED_REVISION not in stored["metadata"]["annotations"]
    assert cluster.events("Deployed") == []


def test_missing_target_deployment_records_warning() -> None:
    cluster = FakeCluster()
    release = _release(cluster)

    _deployer(cluster, [release], []).reconcile(ObjectKey("Pod", NS, "sb-app-v1"), _pod())

    assert len(cluster.events("DeployNotFound")) == 1


@pytest.mark.parametrize("release_ref", [None, "vanished-v9"])
def test_pod_without_release_is_skipped_with_warning(release_ref: str | None) -> None:
    cluster = FakeCluster()

    with pytest.raises(SkipReconcile):
        _deployer(cluster, [], []).reconcile(ObjectKey("Pod", NS, "sb-app-v1"), _pod(release=release_ref))

    assert len(cluster.events("ReleaseNotFound")) == 1


def test_build_phase_treats_non_zero_exit_as_failure() -> None:
    assert build_phase(_pod("Running", exit_code=2)) == "Failed"
    assert build_phase(_pod("Succeeded", exit_code=0)) == "Succeeded"
    assert build_phase({"status": {}}) == "Unknown"


def test_pod_handler_only_follows_build_pods() -> None:
    keys: list[ObjectKey] = []
    handler = pod_handler(keys.append)
    assert handler.on_add is not None

    handler.on_add({"metadata": {"name": "web", "namespace": NS, "labels": {}}})
    handler.on_add(_pod())

    assert keys == [ObjectKey("Pod", NS, "sb-app-v1")]


def test_pod_handler_ignores_updates_without_a_phase_change() -> None:
    keys: list[ObjectKey] = []
    handler = pod_handler(keys.append)
    assert handler.on_update is not None

    handler.on_update(_pod("Running"), _pod("Running"))
    handler.on_update(_pod(), _pod())
    assert keys == []

    handler.on_update(_pod("Running"), _pod())
    handler.on_update(_pod("Running"), _pod("Running", exit_code=1))

    assert keys == [ObjectKey("Pod", NS, "sb-app-v1")] * 2


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


def test_build_request_flows_through_release_build_and_deploy() -> None:
    cluster = FakeCluster()
    deployment = make_deployment(
        annotations={**BUILD_ANNOTATIONS, ANNOTATION_AUTO_DEPLOY: "true"},
    )
    cluster.seed("Deployment", deployment)

    _release_controller(cluster).reconcile(ObjectKey("Deployment", NS, "app"), deployment)
    release = cluster.find("Release", NS, "app-v1")
    assert release is not None and release["spec"]["build"] is True

    _build_controller(cluster).reconcile(ObjectKey("Release", NS, "app-v1"), release)
    pod = cluster.find("Pod", NS, "sb-app-v1")
    assert pod is not None
    pod["status"] = {"phase": "Succeeded"}

    current_release = cluster.find("Release", NS, "app-v1")
    current_deployment = cluster.find("Deployment", NS, "app")
    assert current_release is not None and current_deployment is not None
    _deployer(cluster, [current_release], [current_deployment]).reconcile(ObjectKey("Pod", NS, "sb-app-v1"), pod)

    final = cluster.find("Deployment", NS, "app")
    assert final is not None
    assert final["metadata"]["annotations"][ANNOTATION_BUILD] == "false"
    assert final["metadata"]["annotations"][ANNOTATION_DEPLOYED_REVISION] == "v1"
    assert final["spec"]["template"]["spec"]["containers"][0]["image"] == "slugrunner:test"
    stamped = cluster.find("Release", NS, "app-v1")
    assert stamped is not None
    assert stamped["spec"]["build"] is False
    assert stamped["metadata"]["labels"][LABEL_BUILD_STATUS] == "Succeeded"
