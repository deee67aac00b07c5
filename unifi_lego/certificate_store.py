"""
Read-only view of the certificates written by lego.

lego stores each certificate under ``<path>/certificates/<name>.crt`` (full
chain) and ``<name>.key``, where the name is the primary domain with any
wildcard marker replaced by an underscore.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .types import DeploymentError, KeystoreSyncError

logger = logging.getLogger(__name__)

WILDCARD_MARKER = "*"
WILDCARD_PLACEHOLDER = "_"


def certificate_name(domains: Iterable[str]) -> str:
    """Derive the on-disk certificate name from a SAN list.

    The first domain is the primary one. ``*.example.com`` becomes
    ``_.example.com``, matching the file names lego writes.

    Raises:
        ValueError: If no domain is given
    """
    for domain in domains:
        domain = domain.strip()
        if domain:
            return domain.replace(WILDCARD_MARKER, WILDCARD_PLACEHOLDER)
    raise ValueError("At least one domain is required to name a certificate")


def split_pem_chain(full_chain: bytes) -> list[x509.Certificate]:
    """Parse every certificate of a PEM bundle, leaf first.

    Raises:
        ValueError: If the data holds no PEM certificate
    """
    certificates = x509.load_pem_x509_certificates(full_chain)
    if not certificates:
        raise ValueError("No certificate found in PEM data")
    return certificates


@dataclass(frozen=True)
class CertificateBundle:
    """Certificate material as produced by lego."""

    full_chain: bytes
    private_key: bytes
    cert_path: Path
    key_path: Path
    cert_mtime: float
    key_mtime: float

    @property
    def leaf_cert(self) -> bytes:
        """The end-entity certificate alone, PEM encoded."""
        try:
            leaf = split_pem_chain(self.full_chain)[0]
        except ValueError as e:
            raise KeystoreSyncError(
                f"Cannot extract server certificate from {self.cert_path}: {e}"
            ) from e
        return leaf.public_bytes(serialization.Encoding.PEM)

    def located_at(self, cert_path: Path, key_path: Path) -> "CertificateBundle":
        """Same material, recorded as living at another pair of paths."""
        return replace(self, cert_path=cert_path, key_path=key_path)

    @classmethod
    def from_files(cls, cert_path: Path, key_path: Path) -> "CertificateBundle":
        """Read a certificate/key pair from disk.

        Raises:
            FileNotFoundError: If either file is missing
            OSError: If either file cannot be read
        """
        full_chain = cert_path.read_bytes()
        private_key = key_path.read_bytes()
        return cls(
            full_chain=full_chain,
            private_key=private_key,
            cert_path=cert_path,
            key_path=key_path,
            cert_mtime=cert_path.stat().st_mtime,
            key_mtime=key_path.stat().st_mtime,
        )


class CertificateStore:
    """Locates and loads the certificates in a lego data directory."""

    def __init__(self, lego_path: Path) -> None:
        """Initialize the store.

        Args:
            lego_path: The directory lego is run with as ``--path``
        """
        self.lego_path = lego_path

    @property
    def certificates_dir(self) -> Path:
        return self.lego_path / "certificates"

    def cert_path(self, name: str) -> Path:
        return self.certificates_dir / f"{name}.crt"

    def key_path(self, name: str) -> Path:
        return self.certificates_dir / f"{name}.key"

    def exists(self, name: str) -> bool:
        return self.cert_path(name).is_file() and self.key_path(name).is_file()

    def load(self, name: str) -> CertificateBundle:
        """Load the bundle for a certificate name.

        Raises:
            DeploymentError: If the certificate or key cannot be read
        """
        cert_path = self.cert_path(name)
        key_path = self.key_path(name)
        try:
            bundle = CertificateBundle.from_files(cert_path, key_path)
        except OSError as e:
            raise DeploymentError(
                f"Cannot read certificate '{name}' from {self.certificates_dir}: {e}",
                target="certificate-store",
            ) from e
        logger.debug("Loaded certificate %s from %s", name, cert_path)
        return bundle
