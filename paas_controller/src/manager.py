from __future__ import annotations

import logging
import threading
from collections.abc import Mapping

from paas_controller.src.allocator import ResourceAllocator
from paas_controller.src.allocator import deployment_handler as allocator_deployment_handler
from paas_controller.src.allocator import plan_handler as allocator_plan_handler
from paas_controller.src.build import BuildController, release_handler
from paas_controller.src.config import ControllerConfig
from paas_controller.src.controller import Controller
from paas_controller.src.deployer import BUILD_POD_SELECTOR, DeployerController, pod_handler
from paas_controller.src.events import EventRecorder
from paas_controller.src.informer import Informer
from paas_controller.src.kube import ClusterClient
from paas_controller.src.namespace import NamespaceProvisioner
from paas_controller.src.namespace import namespace_handler as provisioner_namespace_handler
from paas_controller.src.plans import PlanResolver
from paas_controller.src.platform import PlatformCatalog
from paas_controller.src.release import ReleaseController
from paas_controller.src.release import deployment_handler as release_deployment_handler
from paas_controller.src.secrets import SECRET_FIELD_SELECTOR, SecretRotator, secret_handler
from paas_controller.src.secrets import namespace_handler as rotator_namespace_handler
from paas_controller.src.serviceplan import ServicePlanStatusPropagator
from paas_controller.src.serviceplan import plan_handler as status_plan_handler
from paas_controller.src.storage import StorageProvisioner
from paas_controller.src.storage import deployment_handler as storage_deployment_handler

LOGGER = logging.getLogger(__name__)

COMPONENT = "paas-controller"


def build_informers(cluster: ClusterClient, config: ControllerConfig) -> dict[str, Informer]:
    """One shared informer per watched kind; controllers share caches, never duplicate watches."""
    options = {
        "resync_period_seconds": config.resync_seconds,
        "watch_timeout_seconds": config.watch_timeout_seconds,
    }
    return {
        "Namespace": Informer("Namespace", cluster.list_func("Namespace"), **options),
        "Deployment": Informer("Deployment", cluster.list_func("Deployment"), **options),
        "Plan": Informer("Plan", cluster.list_func("Plan"), **options),
        "Release": Informer("Release", cluster.list_func("Release"), **options),
        "Pod": Informer("Pod", cluster.list_func("Pod"), label_selector=BUILD_POD_SELECTOR, **options),
        "Secret": Informer(
            "Secret", cluster.list_func("Secret"), field_selector=SECRET_FIELD_SELECTOR, **options
        ),
    }


class ControllerManager:
    """Wires shared informers, reconcilers and controllers, and runs them together.

    ``run`` starts one thread per informer and per controller and blocks
    until the stop event is set. A controller failing at startup (a cache
    sync timeout) stops the whole manager and is re-raised from ``run``.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        config: ControllerConfig,
        catalog: PlatformCatalog,
        informers: Mapping[str, Informer] | None = None,
    ) -> None:
        self.cluster = cluster
        self.config = config
        self.catalog = catalog
        self.informers = dict(informers) if informers is not None else build_informers(cluster, config)
        self.controllers: list[Controller] = []
        self._stop = threading.Event()
        self._fatal: BaseException | None = None
        self._build()

    def _controller(self, name: str, kinds: tuple[str, ...], reconcilers: Mapping[str, object]) -> Controller:
        controller = Controller(
            name,
            informers={kind: self.informers[kind] for kind in kinds},
            reconcilers=reconcilers,  # type: ignore[arg-type]
            workers=self.config.workers,
            max_retries=self.config.max_retries,
            cache_sync_timeout_seconds=self.config.cache_sync_timeout_seconds,
        )
        self.controllers.append(controller)
        return controller

    def _recorder(self, name: str) -> EventRecorder:
        return EventRecorder(self.cluster, f"{COMPONENT}/{name}")

    def _build(self) -> None:
        cfg = self.config
        inf = self.informers
        plans = PlanResolver(inf["Plan"].get_store(), cfg.platform_namespace)

        allocator = self._controller(
            "resource-allocator",
            ("Deployment", "Plan"),
            {"Deployment": ResourceAllocator(self.cluster, plans, self._recorder("allocator"), cfg.platform_namespace)},
        )
        inf["Deployment"].add_event_handler(allocator_deployment_handler(allocator.enqueue, cfg.platform_namespace))
        inf["Plan"].add_event_handler(
            allocator_plan_handler(allocator.enqueue, inf["Deployment"].get_store(), cfg.platform_namespace)
        )

        provisioner = self._controller(
            "namespace-provisioner",
            ("Namespace", "Plan"),
            {"Namespace": NamespaceProvisioner(self.cluster, plans, self._recorder("namespace"), self.catalog)},
        )
        inf["Namespace"].add_event_handler(provisioner_namespace_handler(provisioner.enqueue))

        status = self._controller(
            "service-plan-status",
            ("Plan",),
            {"Plan": ServicePlanStatusPropagator(self.cluster, plans)},
        )
        inf["Plan"].add_event_handler(status_plan_handler(status.enqueue))

        release = self._controller(
            "release",
            ("Deployment",),
            {"Deployment": ReleaseController(self.cluster, self._recorder("release"), cfg.release_expire_minutes)},
        )
        inf["Deployment"].add_event_handler(release_deployment_handler(release.enqueue))

        build = self._controller(
            "build",
            ("Release",),
            {
                "Release": BuildController(
                    self.cluster,
                    slugbuilder_image=cfg.slugbuilder_image,
                    path_prefix=cfg.release_path_prefix,
                    debug_build=cfg.debug_build,
                )
            },
        )
        inf["Release"].add_event_handler(release_handler(build.enqueue))

        deployer = self._controller(
            "deployer",
            ("Pod", "Release", "Deployment"),
            {
                "Pod": DeployerController(
                    self.cluster,
                    self._recorder("deployer"),
                    inf["Release"].get_store(),
                    inf["Deployment"].get_store(),
                    slugrunner_image=cfg.slugrunner_image,
                    object_store_url=cfg.object_store_url,
                    path_prefix=cfg.release_path_prefix,
                    release_expire_minutes=cfg.release_expire_minutes,
                )
            },
        )
        inf["Pod"].add_event_handler(pod_handler(deployer.enqueue))

        rotator = self._controller(
            "secret-rotator",
            ("Namespace", "Secret"),
            {
                "Namespace": SecretRotator(
                    self.cluster,
                    inf["Secret"].get_store(),
                    cfg.jwt_secret,
                    freshness_minutes=cfg.secret_freshness_minutes,
                )
            },
        )
        inf["Namespace"].add_event_handler(rotator_namespace_handler(rotator.enqueue))
        inf["Secret"].add_event_handler(secret_handler(rotator.enqueue))

        storage = self._controller(
            "storage-provisioner",
            ("Deployment", "Plan"),
            {"Deployment": StorageProvisioner(self.cluster, plans, self._recorder("storage"))},
        )
        inf["Deployment"].add_event_handler(storage_deployment_handler(storage.enqueue))

    def statuses(self) -> dict[str, str]:
        return {controller.name: controller.state.value for controller in self.controllers}

    def ready(self) -> bool:
        return bool(self.controllers) and all(controller.is_running() for controller in self.controllers)

    def request_stop(self) -> None:
        self._stop.set()
        for informer in self.informers.values():
            informer.request_stop()

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Run every informer and controller until stopped; re-raise a fatal controller error.

        A manager runs once; a new leadership term builds a new manager.
        """
        if self._stop.is_set() or (stop_event is not None and stop_event.is_set()):
            return

        def _forward_stop() -> None:
            if stop_event is None:
                return
            while not self._stop.is_set():
                if stop_event.wait(timeout=0.5):
                    self.request_stop()

        def _run_controller(controller: Controller) -> None:
            try:
                controller.run(self._stop)
            except Exception as exc:
                LOGGER.exception("Controller %s failed", controller.name)
                if self._fatal is None:
                    self._fatal = exc
                self.request_stop()

        threads = [
            threading.Thread(target=informer.run, args=(self._stop,), name=f"informer-{kind}", daemon=True)
            for kind, informer in self.informers.items()
        ]
        threads += [
            threading.Thread(target=_run_controller, args=(c,), name=f"controller-{c.name}", daemon=True)
            for c in self.controllers
        ]
        threading.Thread(target=_forward_stop, name="manager-stop", daemon=True).start()
        for thread in threads:
            thread.start()
        LOGGER.info("Started %d informer(s) and %d controller(s)", len(self.informers), len(self.controllers))

        self._stop.wait()
        for thread in threads:
            thread.join(timeout=self.config.leader_election.stop_timeout_seconds)
            if thread.is_alive():
                LOGGER.warning("Thread %s did not stop in time", thread.name)
        LOGGER.info("Controller manager stopped")
        if self._fatal is not None:
            raise self._fatal
