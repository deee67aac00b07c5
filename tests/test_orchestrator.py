"""
Tests for RenewalOrchestrator.

These run the real store, freshness detector, deployer, keystore
synchronizer and restart coordinator against a temporary directory. Only
the external programs (lego, keytool, the controller import command and
systemctl) are replaced with fakes.
"""

import stat
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest

from conftest import (
    ChainPem,
    FakeImporter,
    FakeKeytool,
    FakeSystemctl,
    write_lego_certificate,
)
from unifi_lego.certificate_store import CertificateStore
from unifi_lego.config import Settings
from unifi_lego.deployer import CertificateDeployer
from unifi_lego.freshness import FreshnessDetector, MtimeChangeDetector
from unifi_lego.keystore import KeystoreSynchronizer
from unifi_lego.lego import LegoClient, LegoInstaller
from unifi_lego.orchestrator import RenewalOrchestrator
from unifi_lego.services import ServiceRestartCoordinator
from unifi_lego.types import Error, LegoInstallError, RunState, Success

FIXED_NOW = datetime(2024, 3, 1, 4, 5, 6)


class FakeLego:
    """Stands in for the lego binary.

    ``issue`` decides whether the invocation writes a new certificate, like
    a real issuance or a due renewal would.
    """

    def __init__(
        self,
        settings: Settings,
        chain: ChainPem,
        issue: bool = True,
        returncode: int = 0,
    ) -> None:
        self.settings = settings
        self.chain = chain
        self.issue = issue
        self.returncode = returncode
        self.commands: list[list[str]] = []

    def __call__(self, cmd: list[str], **kwargs: Any) -> Mock:
        self.commands.append(cmd)
        if self.issue and self.returncode == 0:
            write_lego_certificate(self.settings, self.chain)
        return Mock(returncode=self.returncode)


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


def install_unit_resources(settings: Settings) -> None:
    resources = settings.services.resources_dir
    resources.mkdir(parents=True)
    (resources / "unifi-lego.service").write_text("[Service]\n")
    (resources / "unifi-lego.timer").write_text("[Timer]\n")
    settings.services.unit_dir.mkdir(parents=True)


def build_orchestrator(
    settings: Settings,
    lego: FakeLego,
    keytool: FakeKeytool,
    importer: FakeImporter,
    systemctl: FakeSystemctl,
    installer: Mock | None = None,
) -> RenewalOrchestrator:
    store = CertificateStore(settings.lego.data_path)
    sync = KeystoreSynchronizer(
        keytool,  # type: ignore[arg-type]
        importer,  # type: ignore[arg-type]
        clock=lambda: FIXED_NOW,
    )
    if installer is None:
        installer = Mock(spec=LegoInstaller)
        installer.install.return_value = False
    return RenewalOrchestrator(
        settings=settings,
        lego=LegoClient(settings.lego, settings.certificate, runner=lego),
        installer=installer,
        store=store,
        freshness=FreshnessDetector(
            store, MtimeChangeDetector(window=settings.freshness_window)
        ),
        deployer=CertificateDeployer.from_settings(settings, sync),
        keystore_sync=sync,
        restarts=ServiceRestartCoordinator(systemctl),  # type: ignore[arg-type]
        systemctl=systemctl,  # type: ignore[arg-type]
    )


@pytest.fixture
def make_orchestrator(
    chain: ChainPem,
    fake_keytool: FakeKeytool,
    fake_importer: FakeImporter,
    fake_systemctl: FakeSystemctl,
) -> Callable[..., RenewalOrchestrator]:
    """Build an orchestrator; ``issue`` and ``returncode`` configure lego."""

    def _make(
        settings: Settings, issue: bool = True, returncode: int = 0
    ) -> RenewalOrchestrator:
        lego = FakeLego(settings, chain, issue=issue, returncode=returncode)
        return build_orchestrator(
            settings, lego, fake_keytool, fake_importer, fake_systemctl
        )

    return _make


class TestRenew:
    """Test the renew pipeline."""

    def test_full_chain_renewal_radius_disabled(
        self,
        make_settings: Callable[..., Settings],
        make_orchestrator: Callable[..., RenewalOrchestrator],
        chain: ChainPem,
        fake_importer: FakeImporter,
        fake_systemctl: FakeSystemctl,
    ) -> None:
        settings = make_settings(captive={"enabled": True})
        orchestrator = make_orchestrator(settings)

        result = orchestrator.renew()

        assert isinstance(result, Success)
        assert result.message == (
            "Certificate deployed to controller; restarted unifi"
        )
        controller = settings.controller
        assert controller.cert_path.read_bytes() == chain.full_chain
        assert controller.key_path.read_bytes() == chain.private_key
        assert _mode(controller.cert_path) == 0o644
        assert _mode(controller.key_path) == 0o644
        assert not settings.radius.cert_path.exists()
        assert fake_importer.calls == [(controller.key_path, controller.cert_path)]
        assert fake_systemctl.restarted == ["unifi"]
        assert orchestrator.transitions == [
            RunState.IDLE,
            RunState.REQUESTING,
            RunState.ISSUED_OR_RENEWED,
            RunState.DEPLOYING,
            RunState.SYNCING,
            RunState.RESTART_DECIDING,
            RunState.DONE,
        ]

    def test_not_due(
        self,
        make_settings: Callable[..., Settings],
        make_orchestrator: Callable[..., RenewalOrchestrator],
        chain: ChainPem,
        fake_importer: FakeImporter,
        fake_keytool: FakeKeytool,
        fake_systemctl: FakeSystemctl,
    ) -> None:
        settings = make_settings(captive={"enabled": True})
        write_lego_certificate(settings, chain, age_seconds=2 * 3600)
        orchestrator = make_orchestrator(settings, issue=False)

        result = orchestrator.renew()

        assert isinstance(result, Success)
        assert result.message == "Certificate was not renewed, nothing to deploy"
        assert not settings.controller.cert_path.exists()
        assert fake_importer.calls == []
        assert fake_keytool.calls == []
        assert fake_systemctl.restarted == []
        assert RunState.NOT_DUE in orchestrator.transitions
        assert orchestrator.state is RunState.DONE

    def test_not_due_forced_restart(
        self,
        make_settings: Callable[..., Settings],
        make_orchestrator: Callable[..., RenewalOrchestrator],
        chain: ChainPem,
        fake_systemctl: FakeSystemctl,
    ) -> None:
        settings = make_settings()
        write_lego_certificate(settings, chain, age_seconds=2 * 3600)

        result = make_orchestrator(settings, issue=False).renew(force_restart=True)

        assert isinstance(result, Success)
        assert fake_systemctl.restarted == ["unifi"]
        assert not settings.controller.cert_path.exists()

    def test_leaf_only_with_existing_alias(
        self,
        make_settings: Callable[..., Settings],
        chain: ChainPem,
        fake_importer: FakeImporter,
        fake_systemctl: FakeSystemctl,
    ) -> None:
        settings = make_settings(
            captive={"enabled": True}, keystore={"no_bundle": True}
        )
        settings.keystore.path.parent.mkdir(parents=True)
        settings.keystore.path.write_bytes(b"jks-data")
        keytool = FakeKeytool(aliases={"unifi"})
        orchestrator = build_orchestrator(
            settings, FakeLego(settings, chain), keytool, fake_importer, fake_systemctl
        )

        result = orchestrator.renew()

        assert isinstance(result, Success)
        backups = list(settings.keystore.path.parent.glob("keystore_*.backup"))
        assert len(backups) == 1
        assert backups[0].read_bytes() == b"jks-data"
        assert keytool.calls == [("delete", "unifi"), ("import", "unifi")]
        assert keytool.aliases == {"unifi"}
        assert fake_importer.calls == []
        assert fake_systemctl.restarted == ["unifi"]

    def test_leaf_only_absent_alias_continues(
        self,
        make_settings: Callable[..., Settings],
        make_orchestrator: Callable[..., RenewalOrchestrator],
        fake_keytool: FakeKeytool,
        fake_systemctl: FakeSystemctl,
    ) -> None:
        settings = make_settings(
            captive={"enabled": True}, keystore={"no_bundle": True}
        )
        settings.keystore.path.parent.mkdir(parents=True)

        result = make_orchestrator(settings).renew()

        assert isinstance(result, Success)
        assert fake_keytool.aliases == {"unifi"}
        assert fake_systemctl.restarted == ["unifi"]

    def test_radius_enabled(
        self,
        make_settings: Callable[..., Settings],
        make_orchestrator: Callable[..., RenewalOrchestrator],
        chain: ChainPem,
        fake_systemctl: FakeSystemctl,
    ) -> None:
        settings = make_settings(radius={"enabled": True})

        result = make_orchestrator(settings).renew()

        assert isinstance(result, Success)
        assert result.message.startswith(
            "Certificate deployed to controller, radius"
        )
        assert settings.radius.cert_path.read_bytes() == chain.full_chain
        assert _mode(settings.radius.cert_path) == 0o600
        assert _mode(settings.radius.key_path) == 0o600
        assert fake_systemctl.restarted == ["unifi", "freeradius"]

    def test_wildcard_certificate_name(
        self,
        make_settings: Callable[..., Settings],
        make_orchestrator: Callable[..., RenewalOrchestrator],
        chain: ChainPem,
    ) -> None:
        settings = make_settings(
            certificate={"hosts": ["*.example.com", "example.com"]}
        )
        orchestrator = make_orchestrator(settings)

        assert isinstance(orchestrator.renew(), Success)
        assert (
            settings.lego.data_path / "certificates" / "_.example.com.crt"
        ).exists()
        assert settings.controller.cert_path.read_bytes() == chain.full_chain

    def test_unchanged_certificate_does_not_restart(
        self,
        make_settings: Callable[..., Settings],
        make_orchestrator: Callable[..., RenewalOrchestrator],
        fake_systemctl: FakeSystemctl,
    ) -> None:
        settings = make_settings()
        make_orchestrator(settings).renew()
        fake_systemctl.restarted.clear()

        second = make_orchestrator(settings)
        result = second.renew()

        assert isinstance(result, Success)
        assert result.message == "No certificate changes"
        assert second.deployed == []
        assert fake_systemctl.restarted == []

    def test_lego_failure(
        self,
        make_settings: Callable[..., Settings],
        make_orchestrator: Callable[..., RenewalOrchestrator],
        fake_systemctl: FakeSystemctl,
    ) -> None:
        settings = make_settings()
        orchestrator = make_orchestrator(settings, returncode=1)

        result = orchestrator.renew(force_restart=True)

        assert isinstance(result, Error)
        assert "lego exited with code 1" in result.error
        assert result.recovery_suggestions
        assert orchestrator.state is RunState.FAILED
        assert not settings.controller.cert_path.exists()
        assert fake_systemctl.restarted == []

    def test_missing_acme_settings(
        self,
        make_settings: Callable[..., Settings],
        make_orchestrator: Callable[..., RenewalOrchestrator],
    ) -> None:
        settings = make_settings(lego={"dns_provider": None})
        orchestrator = make_orchestrator(settings)

        result = orchestrator.renew()

        assert isinstance(result, Error)
        assert "DNS_PROVIDER" in result.error

    def test_keystore_failure_skips_restart(
        self,
        make_settings: Callable[..., Settings],
        make_orchestrator: Callable[..., RenewalOrchestrator],
        fake_keytool: FakeKeytool,
        fake_systemctl: FakeSystemctl,
    ) -> None:
        settings = make_settings(
            captive={"enabled": True}, keystore={"no_bundle": True}
        )
        settings.keystore.path.parent.mkdir(parents=True)
        fake_keytool.fail_import = "keytool error: bad password"

        result = make_orchestrator(settings).renew()

        assert isinstance(result, Error)
        assert "bad password" in result.error
        assert settings.controller.cert_path.exists()
        assert fake_systemctl.restarted == []

    def test_restart_failure_is_not_an_error(
        self,
        make_settings: Callable[..., Settings],
        chain: ChainPem,
        fake_keytool: FakeKeytool,
        fake_importer: FakeImporter,
    ) -> None:
        settings = make_settings()
        systemctl = FakeSystemctl(failing={"unifi"})
        orchestrator = build_orchestrator(
            settings, FakeLego(settings, chain), fake_keytool, fake_importer, systemctl
        )

        result = orchestrator.renew()

        assert isinstance(result, Success)
        assert orchestrator.restarted == []


class TestInitial:
    """Test the initial pipeline."""

    def test_initial_starts_timer(
        self,
        settings: Settings,
        make_orchestrator: Callable[..., RenewalOrchestrator],
        fake_systemctl: FakeSystemctl,
    ) -> None:
        install_unit_resources(settings)
        orchestrator = make_orchestrator(settings)
        installer: Mock = orchestrator.installer  # type: ignore[assignment]

        result = orchestrator.initial()

        assert isinstance(result, Success)
        assert settings.controller.cert_path.exists()
        assert fake_systemctl.enabled == ["unifi-lego.timer"]
        assert fake_systemctl.restarted == ["unifi"]
        assert fake_systemctl.started == ["unifi-lego.timer"]
        installer.install.assert_called_once_with(force=False)

    def test_initial_failure_leaves_timer_stopped(
        self,
        settings: Settings,
        make_orchestrator: Callable[..., RenewalOrchestrator],
        fake_systemctl: FakeSystemctl,
    ) -> None:
        install_unit_resources(settings)

        result = make_orchestrator(settings, returncode=1).initial()

        assert isinstance(result, Error)
        assert fake_systemctl.started == []

    def test_initial_without_unit_files(
        self,
        settings: Settings,
        make_orchestrator: Callable[..., RenewalOrchestrator],
    ) -> None:
        orchestrator = make_orchestrator(settings)

        result = orchestrator.initial()

        assert isinstance(result, Error)
        assert result.error.startswith("Failed to create services")
        assert RunState.REQUESTING not in orchestrator.transitions


class TestMaintenanceActions:
    """Test update_keystore, test_deploy, create_services and install_lego."""

    def _deploy_controller(self, settings: Settings, chain: ChainPem) -> None:
        settings.controller.cert_path.parent.mkdir(parents=True)
        settings.controller.cert_path.write_bytes(chain.full_chain)
        settings.controller.key_path.write_bytes(chain.private_key)

    def test_update_keystore_always_restarts(
        self,
        make_settings: Callable[..., Settings],
        make_orchestrator: Callable[..., RenewalOrchestrator],
        chain: ChainPem,
        fake_importer: FakeImporter,
        fake_systemctl: FakeSystemctl,
    ) -> None:
        settings = make_settings(radius={"enabled": True})
        self._deploy_controller(settings, chain)

        result = make_orchestrator(settings, issue=False).update_keystore()

        assert isinstance(result, Success)
        assert fake_importer.calls == [
            (settings.controller.key_path, settings.controller.cert_path)
        ]
        assert fake_systemctl.restarted == ["unifi", "freeradius"]

    def test_update_keystore_without_radius_restart(
        self,
        make_settings: Callable[..., Settings],
        make_orchestrator: Callable[..., RenewalOrchestrator],
        chain: ChainPem,
        fake_systemctl: FakeSystemctl,
    ) -> None:
        settings = make_settings(
            radius={"enabled": True},
            services={"restart_radius_on_keystore_update": False},
        )
        self._deploy_controller(settings, chain)

        make_orchestrator(settings, issue=False).update_keystore()

        assert fake_systemctl.restarted == ["unifi"]

    def test_update_keystore_nothing_deployed(
        self,
        settings: Settings,
        make_orchestrator: Callable[..., RenewalOrchestrator],
        fake_systemctl: FakeSystemctl,
    ) -> None:
        result = make_orchestrator(settings, issue=False).update_keystore()

        assert isinstance(result, Error)
        assert result.recovery_suggestions
        assert fake_systemctl.restarted == []

    def test_test_deploy_does_not_restart(
        self,
        settings: Settings,
        make_orchestrator: Callable[..., RenewalOrchestrator],
        chain: ChainPem,
        fake_systemctl: FakeSystemctl,
    ) -> None:
        write_lego_certificate(settings, chain)
        orchestrator = make_orchestrator(settings, issue=False)

        result = orchestrator.test_deploy()

        assert isinstance(result, Success)
        assert settings.controller.cert_path.exists()
        assert fake_systemctl.restarted == []
        assert RunState.REQUESTING not in orchestrator.transitions

    def test_create_services(
        self,
        settings: Settings,
        make_orchestrator: Callable[..., RenewalOrchestrator],
        fake_systemctl: FakeSystemctl,
    ) -> None:
        install_unit_resources(settings)

        result = make_orchestrator(settings).create_services()

        assert isinstance(result, Success)
        assert result.message == "Renewal service and timer installed and enabled"
        assert fake_systemctl.reloads == 1

    def test_install_lego_failure(
        self,
        settings: Settings,
        chain: ChainPem,
        fake_keytool: FakeKeytool,
        fake_importer: FakeImporter,
        fake_systemctl: FakeSystemctl,
    ) -> None:
        installer = Mock(spec=LegoInstaller)
        installer.install.side_effect = LegoInstallError("Verification failure")
        orchestrator = build_orchestrator(
            settings,
            FakeLego(settings, chain),
            fake_keytool,
            fake_importer,
            fake_systemctl,
            installer=installer,
        )

        result = orchestrator.install_lego(force=True)

        assert isinstance(result, Error)
        assert "Verification failure" in result.error
        installer.install.assert_called_once_with(force=True)

    def test_install_lego_installed(
        self,
        settings: Settings,
        chain: ChainPem,
        fake_keytool: FakeKeytool,
        fake_importer: FakeImporter,
        fake_systemctl: FakeSystemctl,
    ) -> None:
        installer = Mock(spec=LegoInstaller)
        installer.install.return_value = True
        orchestrator = build_orchestrator(
            settings,
            FakeLego(settings, chain),
            fake_keytool,
            fake_importer,
            fake_systemctl,
            installer=installer,
        )

        result = orchestrator.install_lego(force=True)

        assert isinstance(result, Success)
        assert result.message == f"lego v{settings.lego.version} installed"
