"""
Service management for unifi-lego.

Restarts the services that read the deployed certificates and installs the
systemd service and timer that run the periodic renewal.
"""

import logging
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .config import Settings
from .types import RestartError, UnifiLegoError

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True)
class ServiceSet:
    """The services that consume the deployed certificates."""

    controller: str
    radius: str
    radius_enabled: bool

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServiceSet":
        return cls(
            controller=settings.services.controller,
            radius=settings.services.radius,
            radius_enabled=settings.radius.enabled,
        )


class RestartFlag:
    """Records whether this run changed anything that needs a restart.

    The flag only ever goes from clear to set, and is consumed once at the
    end of the run.
    """

    def __init__(self) -> None:
        self._set = False
        self._forced = False
        self._consumed = False
        self.reasons: list[str] = []

    @property
    def is_set(self) -> bool:
        return self._set

    @property
    def forced(self) -> bool:
        return self._forced

    def mark(self, reason: str) -> None:
        self._set = True
        self.reasons.append(reason)

    def force(self) -> None:
        """Set the flag regardless of what the run changed."""
        self._forced = True
        self.mark("restart forced")

    def consume(self) -> bool:
        if self._consumed:
            raise RuntimeError("Restart flag was already consumed")
        self._consumed = True
        return self._set


class SystemctlManager:
    """Runs systemctl for restarts and unit management."""

    def __init__(
        self, executable: str = "systemctl", runner: CommandRunner = subprocess.run
    ) -> None:
        self.executable = executable
        self.runner = runner

    def _systemctl(self, *args: str) -> None:
        cmd = [self.executable, *args]
        try:
            result = self.runner(cmd, capture_output=True, text=True)
        except OSError as e:
            raise UnifiLegoError(f"Failed to run {' '.join(cmd)}: {e}") from e
        if result.returncode != 0:
            output = f"{result.stdout or ''}{result.stderr or ''}".strip()
            raise UnifiLegoError(
                f"{' '.join(cmd)} failed (exit code {result.returncode}): {output}"
            )

    def restart(self, unit: str) -> None:
        """Restart a unit.

        Raises:
            RestartError: If systemctl fails
        """
        try:
            self._systemctl("restart", unit)
        except UnifiLegoError as e:
            raise RestartError(str(e), unit=unit) from e

    def daemon_reload(self) -> None:
        self._systemctl("daemon-reload")

    def enable(self, unit: str) -> None:
        self._systemctl("enable", unit)

    def start(self, unit: str) -> None:
        self._systemctl("start", unit)


class ServiceRestartCoordinator:
    """Restarts the certificate consumers when the restart flag is set."""

    def __init__(self, manager: SystemctlManager) -> None:
        self.manager = manager

    def restart(self, flag: RestartFlag, services: ServiceSet) -> list[str]:
        """Restart the services if ``flag`` is set.

        Restart failures are logged and do not propagate: the certificate
        files are already in place at this point.

        Returns:
            The units that were restarted successfully
        """
        if not flag.consume():
            logger.info("No certificate changes, skipping service restarts")
            return []

        units = [services.controller]
        if services.radius_enabled:
            units.append(services.radius)

        restarted = []
        for unit in units:
            logger.info("Restarting %s", unit)
            try:
                self.manager.restart(unit)
            except RestartError as e:
                logger.warning("Failed to restart %s: %s", e.unit, e)
                continue
            restarted.append(unit)
        return restarted


def install_units(settings: Settings, manager: SystemctlManager) -> list[Path]:
    """Install and enable the renewal service and timer.

    Copies the unit files from the resources directory to the systemd unit
    directory, reloads systemd and enables the timer.

    Raises:
        UnifiLegoError: If a unit file cannot be copied or systemctl fails
    """
    services = settings.services
    installed = []
    for unit in (services.service_unit, services.timer_unit):
        source = services.resources_dir / unit
        destination = services.unit_dir / unit
        try:
            shutil.copyfile(source, destination)
        except OSError as e:
            raise UnifiLegoError(f"Failed to install {unit}: {e}") from e
        logger.info("Installed %s", destination)
        installed.append(destination)

    manager.daemon_reload()
    manager.enable(services.timer_unit)
    return installed
