"""
Sequencing of a certificate run.

A run moves through ``RunState``: request the certificate from lego, decide
whether lego actually issued one, deploy it (synchronizing the keystore on
the way), then decide whether to restart services. Each entry point is a
pipeline of steps returning ``Result``; the first ``Error`` ends the run.
"""

import logging
from collections.abc import Callable
from functools import partial

from .certificate_store import CertificateBundle, CertificateStore
from .config import Settings
from .deployer import (
    CONTROLLER_TARGET,
    CertificateDeployer,
    build_targets,
)
from .freshness import FreshnessDetector, MtimeChangeDetector
from .keystore import KeystoreState, KeystoreSynchronizer
from .lego import LegoClient, LegoInstaller
from .services import (
    RestartFlag,
    ServiceRestartCoordinator,
    ServiceSet,
    SystemctlManager,
    install_units,
)
from .types import (
    Error,
    KeystoreSyncError,
    Result,
    RunState,
    Success,
    UnifiLegoError,
)

logger = logging.getLogger(__name__)

Step = Callable[[], Result]


class RenewalOrchestrator:
    """Runs the initial, renew and maintenance actions."""

    def __init__(
        self,
        settings: Settings,
        lego: LegoClient,
        installer: LegoInstaller,
        store: CertificateStore,
        freshness: FreshnessDetector,
        deployer: CertificateDeployer,
        keystore_sync: KeystoreSynchronizer,
        restarts: ServiceRestartCoordinator,
        systemctl: SystemctlManager,
    ) -> None:
        self.settings = settings
        self.lego = lego
        self.installer = installer
        self.store = store
        self.freshness = freshness
        self.deployer = deployer
        self.keystore_sync = keystore_sync
        self.restarts = restarts
        self.systemctl = systemctl
        self.state = RunState.IDLE
        self.transitions: list[RunState] = [RunState.IDLE]
        self.deployed: list[str] = []
        self.restarted: list[str] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "RenewalOrchestrator":
        """Wire up the production collaborators for ``settings``."""
        store = CertificateStore(settings.lego.data_path)
        keystore_sync = KeystoreSynchronizer.from_settings(settings)
        systemctl = SystemctlManager()
        return cls(
            settings=settings,
            lego=LegoClient(settings.lego, settings.certificate),
            installer=LegoInstaller(settings.lego),
            store=store,
            freshness=FreshnessDetector(
                store, MtimeChangeDetector(window=settings.freshness_window)
            ),
            deployer=CertificateDeployer.from_settings(settings, keystore_sync),
            keystore_sync=keystore_sync,
            restarts=ServiceRestartCoordinator(systemctl),
            systemctl=systemctl,
        )

    def _transition(self, state: RunState) -> None:
        logger.debug("Run state %s -> %s", self.state.value, state.value)
        self.state = state
        self.transitions.append(state)

    def _run_pipeline(self, steps: list[Step]) -> Result:
        for step in steps:
            result = step()
            if isinstance(result, Error):
                self._transition(RunState.FAILED)
                return result
            if not result.continue_execution:
                break
        self._transition(RunState.DONE)
        return Success(message=self._summary())

    def _summary(self) -> str:
        if self.deployed:
            message = f"Certificate deployed to {', '.join(self.deployed)}"
        elif RunState.NOT_DUE in self.transitions:
            message = "Certificate was not renewed, nothing to deploy"
        else:
            message = "No certificate changes"
        if self.restarted:
            message += f"; restarted {', '.join(self.restarted)}"
        return message

    @staticmethod
    def _new_flag(force_restart: bool) -> RestartFlag:
        flag = RestartFlag()
        if force_restart:
            flag.force()
        return flag

    # Entry points

    def initial(self, force_restart: bool = False) -> Result:
        """First issuance: install lego, register the timer, request, deploy.

        The renewal timer is started only when the whole run succeeded.
        """
        flag = self._new_flag(force_restart)
        services = ServiceSet.from_settings(self.settings)
        result = self._run_pipeline(
            [
                self._install_if_missing,
                self._create_services,
                partial(self._request, renew=False),
                partial(self._deploy_if_fresh, flag),
                partial(self._apply_restarts, flag, services),
            ]
        )
        if isinstance(result, Error):
            return result

        try:
            logger.info("Starting %s", self.settings.services.timer_unit)
            self.systemctl.start(self.settings.services.timer_unit)
        except UnifiLegoError as e:
            return Error(error=f"Failed to start renewal timer: {e}", exception=e)
        return result

    def renew(self, force_restart: bool = False) -> Result:
        """Renew the certificate if due and deploy it if lego renewed it."""
        flag = self._new_flag(force_restart)
        services = ServiceSet.from_settings(self.settings)
        return self._run_pipeline(
            [
                partial(self._request, renew=True),
                partial(self._deploy_if_fresh, flag),
                partial(self._apply_restarts, flag, services),
            ]
        )

    def update_keystore(self) -> Result:
        """Re-import the deployed controller certificate into the keystore.

        Services are always restarted afterwards. Whether that includes the
        RADIUS server is ``services.restart_radius_on_keystore_update``.
        """
        flag = self._new_flag(force_restart=True)
        services = ServiceSet.from_settings(self.settings)
        if not self.settings.services.restart_radius_on_keystore_update:
            services = ServiceSet(
                controller=services.controller,
                radius=services.radius,
                radius_enabled=False,
            )
        return self._run_pipeline(
            [
                self._sync_deployed_keystore,
                partial(self._apply_restarts, flag, services),
            ]
        )

    def test_deploy(self) -> Result:
        """Deploy the current certificate if it is fresh, without restarts."""
        return self._run_pipeline(
            [partial(self._deploy_if_fresh, self._new_flag(force_restart=False))]
        )

    def create_services(self) -> Result:
        result = self._create_services()
        if isinstance(result, Error):
            return result
        return Success(message="Renewal service and timer installed and enabled")

    def install_lego(self, force: bool = False) -> Result:
        try:
            installed = self.installer.install(force=force)
        except UnifiLegoError as e:
            return Error(error=f"lego installation failed: {e}", exception=e)
        if installed:
            return Success(message=f"lego v{self.settings.lego.version} installed")
        return Success(
            message=f"lego already installed at {self.settings.lego.binary}"
        )

    # Steps

    def _install_if_missing(self) -> Result:
        return self.install_lego(force=False)

    def _create_services(self) -> Result:
        logger.info("Creating unifi-lego systemd service and timer")
        try:
            install_units(self.settings, self.systemctl)
        except UnifiLegoError as e:
            return Error(error=f"Failed to create services: {e}", exception=e)
        return Success()

    def _request(self, renew: bool) -> Result:
        self._transition(RunState.REQUESTING)
        try:
            self.settings.require_acme_settings()
            if renew:
                logger.info("Attempting certificate renewal")
                self.lego.renew(self.settings.lego.renew_days)
            else:
                logger.info("Attempting certificate generation")
                self.lego.run()
        except UnifiLegoError as e:
            return Error(
                error=f"Certificate request failed: {e}",
                exception=e,
                recovery_suggestions="Check the lego output above; nothing was "
                "deployed and the next scheduled run will retry",
            )
        return Success()

    def _deploy_if_fresh(self, flag: RestartFlag) -> Result:
        name = self.settings.certificate.name
        if name is None or not self.freshness.is_fresh(name):
            self._transition(RunState.NOT_DUE)
            # A forced restart still happens even though nothing was deployed
            return Success(continue_execution=flag.forced)

        self._transition(RunState.ISSUED_OR_RENEWED)
        self._transition(RunState.DEPLOYING)
        try:
            bundle = self.store.load(name)
            result = self.deployer.deploy(bundle, build_targets(self.settings))
        except UnifiLegoError as e:
            return Error(error=str(e), exception=e)

        self.deployed = result.written
        if CONTROLLER_TARGET in result.written and self.deployer.keystore_sync:
            self._transition(RunState.SYNCING)
        if result.any_changed:
            flag.mark(f"deployed to {', '.join(result.written)}")
        return Success()

    def _sync_deployed_keystore(self) -> Result:
        self._transition(RunState.SYNCING)
        logger.info("Updating keystore used by the captive portal and WiFiman")
        controller = self.settings.controller
        try:
            bundle = CertificateBundle.from_files(
                controller.cert_path, controller.key_path
            )
        except OSError as e:
            return Error(
                error=f"Cannot read deployed controller certificate: {e}",
                exception=e,
                recovery_suggestions="Run 'initial' or 'renew' to deploy a "
                "certificate first",
            )
        try:
            self.keystore_sync.sync(bundle, KeystoreState.from_settings(self.settings))
        except KeystoreSyncError as e:
            return Error(error=f"Keystore update failed: {e}", exception=e)
        return Success()

    def _apply_restarts(self, flag: RestartFlag, services: ServiceSet) -> Result:
        self._transition(RunState.RESTART_DECIDING)
        self.restarted = self.restarts.restart(flag, services)
        return Success()
