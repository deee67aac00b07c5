"""
Invocation and installation of the lego ACME client.

lego does the ACME work (DNS-01 challenges, account, issuance, renewal) and
writes its results under ``<base_path>/.lego``. This module only builds its
command line, runs it and reports failure.
"""

import asyncio
import hashlib
import logging
import os
import subprocess
import tarfile
import tempfile
from collections.abc import Callable
from pathlib import Path

import aiohttp

from .config import CertificateSettings, LegoSettings
from .types import AcmeClientError, LegoInstallError

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., subprocess.CompletedProcess]
Downloader = Callable[[str, Path], None]

DOWNLOAD_TIMEOUT_SECONDS = 300
DOWNLOAD_CHUNK_SIZE = 64 * 1024


class LegoClient:
    """Runs lego to issue or renew the certificate."""

    def __init__(
        self,
        lego: LegoSettings,
        certificate: CertificateSettings,
        runner: CommandRunner = subprocess.run,
    ) -> None:
        self.lego = lego
        self.certificate = certificate
        self.runner = runner

    def base_args(self) -> list[str]:
        """Global lego arguments shared by ``run`` and ``renew``."""
        args = [
            str(self.lego.binary),
            "--path",
            str(self.lego.data_path),
            "--dns",
            str(self.lego.dns_provider),
            "--email",
            str(self.certificate.email),
            "--key-type",
            self.lego.key_type,
        ]
        for resolver in self.lego.dns_resolvers:
            args.extend(["--dns.resolvers", resolver])
        for domain in self.certificate.hosts:
            args.extend(["-d", domain])
        return args

    def run(self) -> None:
        """Request a new certificate, accepting the CA's terms of service.

        Raises:
            AcmeClientError: If lego fails
        """
        self._invoke([*self.base_args(), "--accept-tos", "run"])

    def renew(self, days: int) -> None:
        """Renew the certificate if it expires within ``days``.

        lego exits 0 when the certificate is not due yet.

        Raises:
            AcmeClientError: If lego fails
        """
        self._invoke([*self.base_args(), "renew", "--days", str(days)])

    def _invoke(self, cmd: list[str]) -> None:
        logger.info("Running %s", " ".join(cmd))
        try:
            # No timeout: lego waits for DNS propagation on its own schedule
            result = self.runner(cmd, check=False)
        except OSError as e:
            raise AcmeClientError(f"Failed to run lego: {e}") from e
        if result.returncode != 0:
            raise AcmeClientError(
                f"lego exited with code {result.returncode}",
                returncode=result.returncode,
            )


async def _download(url: str, destination: Path) -> None:
    timeout = aiohttp.ClientTimeout(total=DOWNLOAD_TIMEOUT_SECONDS)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.get(url) as response:
            response.raise_for_status()
            with destination.open("wb") as f:
                async for chunk in response.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                    f.write(chunk)


def download_file(url: str, destination: Path) -> None:
    """Download ``url`` to ``destination``.

    Raises:
        LegoInstallError: If the download fails
    """
    try:
        asyncio.run(_download(url, destination))
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        raise LegoInstallError(f"Failed to download {url}: {e}") from e


def sha1_of(path: Path) -> str:
    digest = hashlib.sha1()
    with path.open("rb") as f:
        for block in iter(lambda: f.read(DOWNLOAD_CHUNK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


class LegoInstaller:
    """Downloads, extracts and verifies the lego binary."""

    def __init__(
        self,
        lego: LegoSettings,
        downloader: Downloader = download_file,
        tmp_dir: Path | None = None,
    ) -> None:
        self.lego = lego
        self.downloader = downloader
        self.tmp_dir = tmp_dir or Path(tempfile.gettempdir())

    def is_installed(self) -> bool:
        return self.lego.binary.is_file()

    def install(self, force: bool = False) -> bool:
        """Install lego unless it is already present.

        Args:
            force: Reinstall even if the binary exists

        Returns:
            True if the binary was (re)installed, False if nothing was done

        Raises:
            LegoInstallError: If the download, extraction or verification fails
        """
        if self.is_installed() and not force:
            logger.info(
                "lego is already installed at %s, no operation necessary",
                self.lego.binary,
            )
            return False

        if not self.lego.sha1:
            raise LegoInstallError(
                "lego.sha1 (LEGO_SHA1) must be set to verify the lego download"
            )

        tarball = self.tmp_dir / f"lego_release-{self.lego.version}.tar.gz"
        url = self.lego.release_url
        logger.info("Downloading lego v%s from %s", self.lego.version, url)
        try:
            self.downloader(url, tarball)
            self._extract(tarball)
            self._verify()
        finally:
            tarball.unlink(missing_ok=True)

        try:
            os.chmod(self.lego.binary, 0o755)
        except OSError as e:
            raise LegoInstallError(
                f"Failed to make {self.lego.binary} executable: {e}"
            ) from e
        logger.info("Installed lego v%s at %s", self.lego.version, self.lego.binary)
        return True

    def _extract(self, tarball: Path) -> None:
        logger.info("Extracting lego binary to %s", self.lego.binary)
        try:
            with tarfile.open(tarball, "r:gz") as archive:
                member = archive.extractfile("lego")
                if member is None:
                    raise LegoInstallError(f"'lego' in {tarball} is not a file")
                self.lego.binary.parent.mkdir(parents=True, exist_ok=True)
                with member, self.lego.binary.open("wb") as out:
                    out.write(member.read())
        except (tarfile.TarError, KeyError, OSError) as e:
            self.lego.binary.unlink(missing_ok=True)
            raise LegoInstallError(f"Failed to extract lego from {tarball}: {e}") from e

    def _verify(self) -> None:
        actual = sha1_of(self.lego.binary)
        expected = (self.lego.sha1 or "").lower()
        if actual != expected:
            self.lego.binary.unlink(missing_ok=True)
            raise LegoInstallError(
                f"Verification failure, lego binary sha1 was {actual}, "
                f"expected {expected}"
            )
        logger.info("Verified lego v%s:%s", self.lego.version, actual)
