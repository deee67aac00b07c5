"""
Deployment of certificate material to its consumers.

Each consumer (the controller, optionally the RADIUS server) expects the
certificate and key at fixed paths with fixed permissions. Files are replaced
atomically so a consumer never reads a half-written certificate.
"""

import errno
import logging
import os
import stat
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .certificate_store import CertificateBundle
from .config import Settings
from .keystore import KeystoreState, KeystoreSynchronizer
from .types import DeploymentError

logger = logging.getLogger(__name__)

CONTROLLER_TARGET = "controller"
RADIUS_TARGET = "radius"

CONTROLLER_FILE_MODE = 0o644
RADIUS_FILE_MODE = 0o600


@dataclass(frozen=True)
class DeploymentTarget:
    """Where one consumer expects its certificate and key."""

    name: str
    cert_path: Path
    key_path: Path
    mode: int
    enabled: bool = True


@dataclass
class DeployResult:
    """Outcome of a deployment; ``written`` lists the targets changed."""

    written: list[str] = field(default_factory=list)

    @property
    def any_changed(self) -> bool:
        return bool(self.written)


def build_targets(settings: Settings) -> list[DeploymentTarget]:
    """Deployment targets in the order they are written."""
    return [
        DeploymentTarget(
            name=CONTROLLER_TARGET,
            cert_path=settings.controller.cert_path,
            key_path=settings.controller.key_path,
            mode=CONTROLLER_FILE_MODE,
        ),
        DeploymentTarget(
            name=RADIUS_TARGET,
            cert_path=settings.radius.cert_path,
            key_path=settings.radius.key_path,
            mode=RADIUS_FILE_MODE,
            enabled=settings.radius.enabled,
        ),
    ]


def _is_current(path: Path, data: bytes, mode: int) -> bool:
    try:
        return (
            stat.S_IMODE(path.stat().st_mode) == mode and path.read_bytes() == data
        )
    except OSError:
        return False


def _stage_file(path: Path, data: bytes, mode: int) -> str:
    """Write ``data`` to a temporary file beside ``path`` and return its name."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.is_dir():
        raise IsADirectoryError(errno.EISDIR, os.strerror(errno.EISDIR), str(path))
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return tmp_name


def write_files_atomic(
    files: Sequence[tuple[Path, bytes, int]],
    replaced: list[Path] | None = None,
) -> None:
    """Replace each ``(path, data, mode)`` in ``files`` as one unit.

    Every file is staged (written, synced and chmodded) before any
    destination is touched, so a failed write leaves all destinations as
    they were. Paths renamed into place are appended to ``replaced``; it is
    only non-empty after a failure if a rename itself failed.

    Raises:
        OSError: If a file cannot be staged or renamed
    """
    staged: list[tuple[str, Path]] = []
    try:
        for path, data, mode in files:
            staged.append((_stage_file(path, data, mode), path))
        for tmp_name, path in staged:
            os.replace(tmp_name, path)
            if replaced is not None:
                replaced.append(path)
    except BaseException:
        for tmp_name, _ in staged:
            Path(tmp_name).unlink(missing_ok=True)
        raise


def write_file_atomic(path: Path, data: bytes, mode: int) -> None:
    """Replace ``path`` with ``data`` and set its permission bits to ``mode``.

    Raises:
        OSError: If the file cannot be written or its mode set
    """
    write_files_atomic([(path, data, mode)])


class CertificateDeployer:
    """Writes a certificate bundle to every enabled deployment target."""

    def __init__(
        self,
        keystore_sync: KeystoreSynchronizer | None = None,
        keystore_state: KeystoreState | None = None,
    ) -> None:
        """Initialize the deployer.

        Args:
            keystore_sync: Synchronizer to run after the controller target is
                written; None when the captive portal is disabled
            keystore_state: The keystore to synchronize
        """
        if (keystore_sync is None) != (keystore_state is None):
            raise ValueError("keystore_sync and keystore_state go together")
        self.keystore_sync = keystore_sync
        self.keystore_state = keystore_state

    @classmethod
    def from_settings(
        cls, settings: Settings, keystore_sync: KeystoreSynchronizer
    ) -> "CertificateDeployer":
        if not settings.captive_enabled:
            return cls()
        return cls(keystore_sync, KeystoreState.from_settings(settings))

    def deploy(
        self, bundle: CertificateBundle, targets: list[DeploymentTarget]
    ) -> DeployResult:
        """Deploy ``bundle`` to each enabled target, in order.

        Raises:
            DeploymentError: If writing a target fails; earlier targets stay
                deployed
            KeystoreSyncError: If the keystore synchronization fails
        """
        result = DeployResult()
        for target in targets:
            if not target.enabled:
                logger.debug("Skipping disabled target %s", target.name)
                continue

            replaced: list[Path] = []
            try:
                changed = self._deploy_target(bundle, target, replaced)
            except OSError as e:
                self._log_failure(target, result, replaced)
                raise DeploymentError(
                    f"Failed to deploy certificate to {target.name}: {e}",
                    target=target.name,
                ) from e

            if not changed:
                logger.info("Target %s already up to date", target.name)
                continue

            result.written.append(target.name)
            logger.info(
                "Deployed certificate to %s (%s, %s)",
                target.name,
                target.cert_path,
                target.key_path,
            )

            if (
                target.name == CONTROLLER_TARGET
                and self.keystore_sync is not None
                and self.keystore_state is not None
            ):
                self.keystore_sync.sync(
                    bundle.located_at(target.cert_path, target.key_path),
                    self.keystore_state,
                )

        return result

    @staticmethod
    def _log_failure(
        target: DeploymentTarget, result: DeployResult, replaced: list[Path]
    ) -> None:
        if replaced:
            logger.warning(
                "Partial deployment: %s of %s replaced before the write failed",
                ", ".join(str(p) for p in replaced),
                target.name,
            )
        else:
            logger.warning(
                "Deployment to %s failed; its files are unchanged", target.name
            )
        if result.written:
            logger.warning(
                "Partial deployment: %s written before %s failed",
                ", ".join(result.written),
                target.name,
            )

    def _deploy_target(
        self, bundle: CertificateBundle, target: DeploymentTarget, replaced: list[Path]
    ) -> bool:
        if _is_current(
            target.cert_path, bundle.full_chain, target.mode
        ) and _is_current(target.key_path, bundle.private_key, target.mode):
            return False
        write_files_atomic(
            [
                (target.cert_path, bundle.full_chain, target.mode),
                (target.key_path, bundle.private_key, target.mode),
            ],
            replaced,
        )
        return True
