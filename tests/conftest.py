"""
Fixtures for pytest.

This file contains fixtures and fakes shared across the unifi-lego tests:
a generated certificate chain, settings rooted in a temporary directory, and
stand-ins for keytool, the controller import command, systemctl and lego.
"""

import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from unifi_lego.certificate_store import CertificateBundle
from unifi_lego.config import Settings, default_config
from unifi_lego.config_utils import deep_merge
from unifi_lego.keystore import KeystoreState
from unifi_lego.types import AliasNotFoundError, KeystoreSyncError, RestartError


@dataclass(frozen=True)
class ChainPem:
    full_chain: bytes
    leaf: bytes
    intermediate: bytes
    private_key: bytes


def _make_cert(
    subject_cn: str,
    issuer_cn: str,
    public_key: Any,
    signing_key: Any,
    is_ca: bool,
    dns_name: str | None = None,
) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject_cn)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn)]))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=90))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    )
    if dns_name:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(dns_name)]), critical=False
        )
    return builder.sign(signing_key, hashes.SHA256())


def make_chain(domain: str = "vpn.example.com") -> ChainPem:
    """Build a leaf + intermediate chain the way lego writes ``<name>.crt``."""
    root_key = ec.generate_private_key(ec.SECP256R1())
    intermediate_key = ec.generate_private_key(ec.SECP256R1())
    leaf_key = ec.generate_private_key(ec.SECP256R1())

    intermediate = _make_cert(
        "Test Intermediate", "Test Root", intermediate_key.public_key(), root_key, True
    )
    leaf = _make_cert(
        domain, "Test Intermediate", leaf_key.public_key(), intermediate_key, False,
        dns_name=domain,
    )

    leaf_pem = leaf.public_bytes(serialization.Encoding.PEM)
    intermediate_pem = intermediate.public_bytes(serialization.Encoding.PEM)
    key_pem = leaf_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return ChainPem(
        full_chain=leaf_pem + intermediate_pem,
        leaf=leaf_pem,
        intermediate=intermediate_pem,
        private_key=key_pem,
    )


@pytest.fixture(scope="session")
def chain() -> ChainPem:
    """A certificate chain shared by all tests (generation is slow)."""
    return make_chain()


@pytest.fixture
def config_dict(tmp_path: Path) -> dict[str, Any]:
    """Default configuration with every path inside ``tmp_path``."""
    config = default_config()
    deep_merge(
        config,
        {
            "lego": {
                "base_path": str(tmp_path / "unifi-lego"),
                "dns_provider": "cloudflare",
                "sha1": "0" * 40,
            },
            "certificate": {
                "email": "admin@example.com",
                "hosts": ["vpn.example.com"],
            },
            "controller": {"cert_dir": str(tmp_path / "controller")},
            "radius": {"cert_dir": str(tmp_path / "radius")},
            "keystore": {"dir": str(tmp_path / "keystore")},
            "services": {"unit_dir": str(tmp_path / "systemd")},
        },
    )
    return config


@pytest.fixture
def make_settings(config_dict: dict[str, Any]) -> Callable[..., Settings]:
    """Build settings from the temporary config, with section overrides."""

    def _make(**sections: dict[str, Any]) -> Settings:
        config = default_config()
        deep_merge(config, config_dict)
        deep_merge(config, sections)
        return Settings.from_dict(config)

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


def write_lego_certificate(
    settings: Settings, chain: ChainPem, age_seconds: float = 0.0
) -> tuple[Path, Path]:
    """Write the chain where lego would, backdated by ``age_seconds``."""
    certificates = settings.lego.data_path / "certificates"
    certificates.mkdir(parents=True, exist_ok=True)
    name = settings.certificate.name
    cert_path = certificates / f"{name}.crt"
    key_path = certificates / f"{name}.key"
    cert_path.write_bytes(chain.full_chain)
    key_path.write_bytes(chain.private_key)
    mtime = time.time() - age_seconds
    os.utime(cert_path, (mtime, mtime))
    os.utime(key_path, (mtime, mtime))
    return cert_path, key_path


@pytest.fixture
def bundle(tmp_path: Path, chain: ChainPem) -> CertificateBundle:
    source = tmp_path / "source"
    source.mkdir()
    cert_path = source / "vpn.example.com.crt"
    key_path = source / "vpn.example.com.key"
    cert_path.write_bytes(chain.full_chain)
    key_path.write_bytes(chain.private_key)
    return CertificateBundle.from_files(cert_path, key_path)


class FakeKeytool:
    """In-memory keytool: a keystore is a set of aliases per path."""

    def __init__(self, aliases: set[str] | None = None) -> None:
        self.aliases: set[str] = set(aliases or ())
        self.calls: list[tuple[str, str]] = []
        self.fail_delete: str | None = None
        self.fail_import: str | None = None

    def delete_alias(self, state: KeystoreState) -> None:
        self.calls.append(("delete", state.alias))
        if self.fail_delete:
            raise KeystoreSyncError(self.fail_delete)
        if state.alias not in self.aliases:
            raise AliasNotFoundError(f"Alias <{state.alias}> does not exist")
        self.aliases.remove(state.alias)

    def import_pkcs12(self, state: KeystoreState, source: Path) -> None:
        self.calls.append(("import", state.alias))
        if self.fail_import:
            raise KeystoreSyncError(self.fail_import)
        assert source.exists()
        if state.alias in self.aliases:
            raise KeystoreSyncError(f"Alias <{state.alias}> already exists")
        self.aliases.add(state.alias)


class FakeImporter:
    def __init__(self) -> None:
        self.calls: list[tuple[Path, Path]] = []

    def import_key_cert(self, key_path: Path, cert_path: Path) -> None:
        self.calls.append((key_path, cert_path))


class FakeSystemctl:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.restarted: list[str] = []
        self.started: list[str] = []
        self.enabled: list[str] = []
        self.reloads = 0

    def restart(self, unit: str) -> None:
        if unit in self.failing:
            raise RestartError(f"systemctl restart {unit} failed", unit=unit)
        self.restarted.append(unit)

    def daemon_reload(self) -> None:
        self.reloads += 1

    def enable(self, unit: str) -> None:
        self.enabled.append(unit)

    def start(self, unit: str) -> None:
        self.started.append(unit)


@pytest.fixture
def fake_keytool() -> FakeKeytool:
    return FakeKeytool()


@pytest.fixture
def fake_importer() -> FakeImporter:
    return FakeImporter()


@pytest.fixture
def fake_systemctl() -> FakeSystemctl:
    return FakeSystemctl()
