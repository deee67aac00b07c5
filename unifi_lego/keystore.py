"""
Keystore synchronization for the controller's Java keystore.

The captive portal and WiFiman read the certificate from the controller
keystore. Two import modes are supported:

- full chain: the controller's own import command replaces the entry
- leaf only: the server certificate alone is packed into a PKCS#12 file and
  swapped in with keytool (delete the alias, then import it again)

Leaf-only mode is experimental. WiFiman needs it, but clients that do not
have the intermediate CA certificate cached cannot complete the chain.
"""

import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from .certificate_store import CertificateBundle
from .config import Settings
from .types import AliasNotFoundError, KeystoreMode, KeystoreSyncError

logger = logging.getLogger(__name__)

BACKUP_TIME_FORMAT = "%Y-%m-%d_%Hh%Mm%Ss"
PKCS12_FILENAME = "unifi-key-plus-server-only-cert.p12"

# keytool prints this when -delete is given an unknown alias
ALIAS_MISSING_MARKER = "does not exist"

CommandRunner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True)
class KeystoreState:
    """The live keystore and how certificates are imported into it."""

    path: Path
    alias: str
    password: str
    mode: KeystoreMode

    @property
    def pkcs12_path(self) -> Path:
        return self.path.parent / PKCS12_FILENAME

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeystoreState":
        return cls(
            path=settings.keystore.path,
            alias=settings.keystore.alias,
            password=settings.keystore.password,
            mode=settings.keystore.mode,
        )


def _run(runner: CommandRunner, cmd: list[str]) -> subprocess.CompletedProcess:
    try:
        return runner(cmd, capture_output=True, text=True)
    except OSError as e:
        raise KeystoreSyncError(f"Failed to run {cmd[0]}: {e}") from e


def _command_output(result: subprocess.CompletedProcess) -> str:
    return f"{result.stdout or ''}{result.stderr or ''}".strip()


class Keytool:
    """Thin wrapper around the Java keytool commands used for leaf-only mode."""

    def __init__(
        self, executable: str = "keytool", runner: CommandRunner = subprocess.run
    ) -> None:
        self.executable = executable
        self.runner = runner

    def delete_alias(self, state: KeystoreState) -> None:
        """Remove ``state.alias`` from the keystore.

        Raises:
            AliasNotFoundError: If the keystore has no such alias
            KeystoreSyncError: On any other keytool failure
        """
        cmd = [
            self.executable,
            "-delete",
            "-alias",
            state.alias,
            "-keystore",
            str(state.path),
            "-storepass",
            state.password,
        ]
        result = _run(self.runner, cmd)
        if result.returncode != 0:
            output = _command_output(result)
            if ALIAS_MISSING_MARKER in output:
                raise AliasNotFoundError(
                    f"Alias '{state.alias}' not present in {state.path}"
                )
            raise KeystoreSyncError(
                f"keytool failed to delete alias '{state.alias}' "
                f"(exit code {result.returncode}): {output}"
            )

    def import_pkcs12(self, state: KeystoreState, source: Path) -> None:
        """Import ``state.alias`` from a PKCS#12 file into the keystore.

        Raises:
            KeystoreSyncError: If keytool fails
        """
        cmd = [
            self.executable,
            "-importkeystore",
            "-alias",
            state.alias,
            "-destkeypass",
            state.password,
            "-destkeystore",
            str(state.path),
            "-deststorepass",
            state.password,
            "-noprompt",
            "-srckeystore",
            str(source),
            "-srcstorepass",
            state.password,
            "-srcstoretype",
            "PKCS12",
        ]
        result = _run(self.runner, cmd)
        if result.returncode != 0:
            raise KeystoreSyncError(
                f"keytool failed to import alias '{state.alias}' "
                f"(exit code {result.returncode}): {_command_output(result)}"
            )


class HostCertificateImporter:
    """Runs the controller's own key/certificate import command."""

    def __init__(self, command: str, runner: CommandRunner = subprocess.run) -> None:
        self.command = command
        self.runner = runner

    def import_key_cert(self, key_path: Path, cert_path: Path) -> None:
        """Import the full chain and key into the keystore.

        Raises:
            KeystoreSyncError: If the command fails
        """
        cmd = [*shlex.split(self.command), str(key_path), str(cert_path)]
        result = _run(self.runner, cmd)
        if result.returncode != 0:
            raise KeystoreSyncError(
                f"Certificate import command failed "
                f"(exit code {result.returncode}): {_command_output(result)}"
            )


def backup_keystore(keystore_path: Path, now: datetime) -> Path | None:
    """Copy the keystore to a new timestamped backup file.

    The backup is created exclusively, so an existing backup is never
    overwritten; a second backup within the same second gets a numeric
    suffix. Returns None when there is no keystore to back up.

    Raises:
        KeystoreSyncError: If the copy fails
    """
    if not keystore_path.exists():
        logger.warning("Keystore %s does not exist, skipping backup", keystore_path)
        return None

    stem = f"{keystore_path.name}_{now.strftime(BACKUP_TIME_FORMAT)}"
    attempt = 0
    while True:
        suffix = f"_{attempt}" if attempt else ""
        backup_path = keystore_path.with_name(f"{stem}{suffix}.backup")
        try:
            dst = backup_path.open("xb")
        except FileExistsError:
            attempt += 1
            continue
        except OSError as e:
            raise KeystoreSyncError(
                f"Failed to back up keystore {keystore_path}: {e}"
            ) from e
        break

    # Never leave a truncated backup behind
    try:
        with dst, keystore_path.open("rb") as src:
            shutil.copyfileobj(src, dst)
        shutil.copystat(keystore_path, backup_path)
    except OSError as e:
        backup_path.unlink(missing_ok=True)
        raise KeystoreSyncError(
            f"Failed to back up keystore {keystore_path}: {e}"
        ) from e

    logger.info("Keystore backed up to %s", backup_path)
    return backup_path


def build_leaf_pkcs12(bundle: CertificateBundle, alias: str, password: str) -> bytes:
    """Pack the leaf certificate and private key into a PKCS#12 container.

    Raises:
        KeystoreSyncError: If the certificate or key cannot be parsed
    """
    try:
        certificate = x509.load_pem_x509_certificate(bundle.leaf_cert)
        private_key = serialization.load_pem_private_key(
            bundle.private_key, password=None
        )
        encryption: serialization.KeySerializationEncryption
        if password:
            encryption = serialization.BestAvailableEncryption(password.encode())
        else:
            encryption = serialization.NoEncryption()
        return pkcs12.serialize_key_and_certificates(
            name=alias.encode(),
            key=private_key,  # type: ignore[arg-type]
            cert=certificate,
            cas=None,
            encryption_algorithm=encryption,
        )
    except (ValueError, TypeError) as e:
        raise KeystoreSyncError(f"Cannot build PKCS#12 container: {e}") from e


def _write_private_file(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, 0o600)


class KeystoreSynchronizer:
    """Brings the controller keystore in line with the current certificate."""

    def __init__(
        self,
        keytool: Keytool,
        importer: HostCertificateImporter,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.keytool = keytool
        self.importer = importer
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeystoreSynchronizer":
        return cls(
            keytool=Keytool(settings.keystore.keytool),
            importer=HostCertificateImporter(settings.keystore.import_command),
        )

    def sync(self, bundle: CertificateBundle, state: KeystoreState) -> None:
        """Import ``bundle`` into the keystore described by ``state``.

        Args:
            bundle: Certificate material; its paths must point at the files
                deployed for the controller
            state: Keystore location, alias, password and import mode

        Raises:
            KeystoreSyncError: If any step fails
        """
        if state.mode is KeystoreMode.LEAF_ONLY:
            self._sync_leaf_only(bundle, state)
        else:
            self._sync_full_chain(bundle, state)

    def _sync_full_chain(self, bundle: CertificateBundle, state: KeystoreState) -> None:
        logger.info("Importing full certificate chain bundle into %s", state.path)
        self.importer.import_key_cert(bundle.key_path, bundle.cert_path)

    def _sync_leaf_only(self, bundle: CertificateBundle, state: KeystoreState) -> None:
        logger.info("Importing server certificate only into %s", state.path)
        logger.warning(
            "Leaf-only keystore import is experimental: clients without a cached "
            "intermediate CA certificate may fail to connect to the captive portal"
        )

        container = build_leaf_pkcs12(bundle, state.alias, state.password)
        try:
            _write_private_file(state.pkcs12_path, container)
        except OSError as e:
            raise KeystoreSyncError(
                f"Failed to write PKCS#12 file {state.pkcs12_path}: {e}"
            ) from e

        backup_keystore(state.path, self.clock())

        try:
            self.keytool.delete_alias(state)
        except AliasNotFoundError:
            logger.info(
                "Alias '%s' not present in %s, nothing to delete",
                state.alias,
                state.path,
            )

        self.keytool.import_pkcs12(state, state.pkcs12_path)
        logger.info("Alias '%s' imported into %s", state.alias, state.path)
