"""Configuration management for unifi-lego

The configuration is loaded once at process entry: YAML file merged over
``DEFAULT_CONFIG``, then the ``unifi-lego.env`` environment variables
(``CERT_HOSTS``, ``DNS_PROVIDER`` and so on) on top. The result is turned
into an immutable ``Settings`` object that is passed to every component.
"""

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from .certificate_store import certificate_name
from .config_utils import (
    convert_string_to_bool,
    convert_string_to_list,
    copy_config,
    get_config_path,
    get_nested_value,
    load_yaml_config,
    set_nested_value,
)
from .types import ConfigurationError, KeystoreMode

DEFAULT_CONFIG: dict[str, Any] = {
    "lego": {
        "base_path": "/data/unifi-lego",
        "binary": None,  # <base_path>/lego if None
        "version": "4.17.4",
        "sha1": None,
        "download_url": "https://github.com/go-acme/lego/releases/download/"
        "v{version}/lego_v{version}_linux_{arch}.tar.gz",
        "arch": "arm64",
        "dns_provider": None,
        "dns_resolvers": [],
        "key_type": "rsa2048",
        "renew_days": 60,
    },
    "certificate": {
        "email": None,
        "hosts": [],
        "name": None,  # First host if None
    },
    "controller": {
        "cert_dir": "/data/unifi-core/config",
        "cert_file": "unifi.crt",
        "key_file": "unifi.key",
    },
    "radius": {
        "enabled": False,
        "cert_dir": "/data/udapi-config/raddb/certs",
        "cert_file": "server.pem",
        "key_file": "server-key.pem",
    },
    "captive": {
        "enabled": False,
    },
    "keystore": {
        "dir": "/usr/lib/unifi/data",
        "file": "keystore",
        "alias": "unifi",
        "password": "aircontrolenterprise",
        "no_bundle": False,  # True imports the leaf certificate only
        "import_command": "java -jar /usr/lib/unifi/lib/ace.jar import_key_cert",
        "keytool": "keytool",
    },
    "services": {
        "controller": "unifi",
        "radius": "freeradius",
        "service_unit": "unifi-lego.service",
        "timer_unit": "unifi-lego.timer",
        "unit_dir": "/etc/systemd/system",
        "resources_dir": None,  # <base_path>/resources/systemd if None
        "restart_radius_on_keystore_update": True,
    },
    "system": {
        "log_level": "INFO",
        "freshness_window_minutes": 5,
    },
}

# Environment variable -> (config path, type)
ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "UDM_LE_PATH": ("lego.base_path", str),
    "LEGO_BINARY": ("lego.binary", str),
    "LEGO_VERSION": ("lego.version", str),
    "LEGO_SHA1": ("lego.sha1", str),
    "LEGO_DOWNLOAD_URL": ("lego.download_url", str),
    "LEGO_ARCH": ("lego.arch", str),
    "DNS_PROVIDER": ("lego.dns_provider", str),
    "DNS_RESOLVERS": ("lego.dns_resolvers", list),
    "CERT_EMAIL": ("certificate.email", str),
    "CERT_HOSTS": ("certificate.hosts", list),
    "CERT_NAME": ("certificate.name", str),
    "UBIOS_CONTROLLER_CERT_PATH": ("controller.cert_dir", str),
    "UBIOS_RADIUS_CERT_PATH": ("radius.cert_dir", str),
    "ENABLE_RADIUS": ("radius.enabled", bool),
    "ENABLE_CAPTIVE": ("captive.enabled", bool),
    "UNIFIOS_KEYSTORE_PATH": ("keystore.dir", str),
    "UNIFIOS_KEYSTORE_CERT_ALIAS": ("keystore.alias", str),
    "UNIFIOS_KEYSTORE_PASSWORD": ("keystore.password", str),
    "NO_BUNDLE": ("keystore.no_bundle", bool),
    "CERT_IMPORT_CMD": ("keystore.import_command", str),
}


@dataclass(frozen=True)
class LegoSettings:
    base_path: Path
    binary: Path
    version: str
    sha1: str | None
    download_url: str
    arch: str
    dns_provider: str | None
    dns_resolvers: tuple[str, ...]
    key_type: str
    renew_days: int

    @property
    def data_path(self) -> Path:
        """Directory passed to lego as ``--path``."""
        return self.base_path / ".lego"

    @property
    def release_url(self) -> str:
        return self.download_url.format(version=self.version, arch=self.arch)


@dataclass(frozen=True)
class CertificateSettings:
    email: str | None
    hosts: tuple[str, ...]
    name: str | None


@dataclass(frozen=True)
class TargetSettings:
    cert_path: Path
    key_path: Path
    enabled: bool = True


@dataclass(frozen=True)
class KeystoreSettings:
    path: Path
    alias: str
    password: str
    mode: KeystoreMode
    import_command: str
    keytool: str


@dataclass(frozen=True)
class ServiceSettings:
    controller: str
    radius: str
    service_unit: str
    timer_unit: str
    unit_dir: Path
    resources_dir: Path
    restart_radius_on_keystore_update: bool


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration built once at process entry."""

    lego: LegoSettings
    certificate: CertificateSettings
    controller: TargetSettings
    radius: TargetSettings
    captive_enabled: bool
    keystore: KeystoreSettings
    services: ServiceSettings
    log_level: str
    freshness_window: timedelta

    def require_acme_settings(self) -> None:
        """Check the settings needed to invoke lego.

        Raises:
            ConfigurationError: If the DNS provider, email or hosts are missing
        """
        missing = []
        if not self.lego.dns_provider:
            missing.append("lego.dns_provider (DNS_PROVIDER)")
        if not self.certificate.email:
            missing.append("certificate.email (CERT_EMAIL)")
        if not self.certificate.hosts:
            missing.append("certificate.hosts (CERT_HOSTS)")
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}"
            )

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "Settings":
        """Build settings from a merged configuration dict.

        Raises:
            ConfigurationError: If a value has the wrong type or range
        """
        try:
            lego = config["lego"]
            base_path = Path(lego["base_path"])
            hosts = tuple(
                str(h).strip() for h in _configured_hosts(config) if str(h).strip()
            )
            name = config["certificate"].get("name")
            if not name and hosts:
                name = certificate_name(hosts)
            elif name:
                name = certificate_name([name])

            renew_days = int(lego["renew_days"])
            window_minutes = float(config["system"]["freshness_window_minutes"])
            if renew_days < 1:
                raise ConfigurationError(
                    f"Invalid value for lego.renew_days: {renew_days}"
                )
            if window_minutes <= 0:
                raise ConfigurationError(
                    "Invalid value for system.freshness_window_minutes: "
                    f"{window_minutes}"
                )

            controller = config["controller"]
            radius = config["radius"]
            keystore = config["keystore"]
            services = config["services"]
            keystore_dir = Path(keystore["dir"])

            return cls(
                lego=LegoSettings(
                    base_path=base_path,
                    binary=Path(lego["binary"] or base_path / "lego"),
                    version=str(lego["version"]),
                    sha1=lego.get("sha1") or None,
                    download_url=str(lego["download_url"]),
                    arch=str(lego["arch"]),
                    dns_provider=lego.get("dns_provider") or None,
                    dns_resolvers=tuple(lego.get("dns_resolvers") or ()),
                    key_type=str(lego["key_type"]),
                    renew_days=renew_days,
                ),
                certificate=CertificateSettings(
                    email=config["certificate"].get("email") or None,
                    hosts=hosts,
                    name=name or None,
                ),
                controller=TargetSettings(
                    cert_path=Path(controller["cert_dir"]) / controller["cert_file"],
                    key_path=Path(controller["cert_dir"]) / controller["key_file"],
                ),
                radius=TargetSettings(
                    cert_path=Path(radius["cert_dir"]) / radius["cert_file"],
                    key_path=Path(radius["cert_dir"]) / radius["key_file"],
                    enabled=_as_bool(radius["enabled"]),
                ),
                captive_enabled=_as_bool(config["captive"]["enabled"]),
                keystore=KeystoreSettings(
                    path=keystore_dir / keystore["file"],
                    alias=str(keystore["alias"]),
                    password=str(keystore["password"]),
                    mode=(
                        KeystoreMode.LEAF_ONLY
                        if _as_bool(keystore["no_bundle"])
                        else KeystoreMode.FULL_CHAIN
                    ),
                    import_command=str(keystore["import_command"]),
                    keytool=str(keystore["keytool"]),
                ),
                services=ServiceSettings(
                    controller=str(services["controller"]),
                    radius=str(services["radius"]),
                    service_unit=str(services["service_unit"]),
                    timer_unit=str(services["timer_unit"]),
                    unit_dir=Path(services["unit_dir"]),
                    resources_dir=Path(
                        services["resources_dir"] or base_path / "resources" / "systemd"
                    ),
                    restart_radius_on_keystore_update=_as_bool(
                        services["restart_radius_on_keystore_update"]
                    ),
                ),
                log_level=str(config["system"]["log_level"]).upper(),
                freshness_window=timedelta(minutes=window_minutes),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return convert_string_to_bool(value)
    return bool(value)


def _configured_hosts(config: dict[str, Any]) -> list[str]:
    hosts = config["certificate"].get("hosts") or []
    if isinstance(hosts, str):
        return convert_string_to_list(hosts)
    return list(hosts)


def apply_env_overrides(
    config: dict[str, Any], environ: dict[str, str] | None = None
) -> None:
    """Apply the ``unifi-lego.env`` variables on top of ``config``.

    Raises:
        ConfigurationError: If a boolean variable has an unrecognised value
    """
    if environ is None:
        environ = dict(os.environ)

    for env_name, (path, value_type) in ENV_OVERRIDES.items():
        if env_name not in environ:
            continue
        raw = environ[env_name]
        try:
            value: Any
            if value_type is bool:
                value = convert_string_to_bool(raw)
            elif value_type is list:
                value = convert_string_to_list(raw)
            else:
                value = raw
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {env_name}: {e}") from e
        set_nested_value(config, path, value)


def load_config_dict(
    config_path: Path | None = None, environ: dict[str, str] | None = None
) -> dict[str, Any]:
    """Load the merged configuration dict (defaults, file, environment)."""
    path = get_config_path(config_path)
    try:
        config = load_yaml_config(path, DEFAULT_CONFIG)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    apply_env_overrides(config, environ)
    return config


def load_settings(
    config_path: Path | None = None, environ: dict[str, str] | None = None
) -> Settings:
    """Load and validate the runtime settings."""
    return Settings.from_dict(load_config_dict(config_path, environ))


def default_config() -> dict[str, Any]:
    """Return a fresh copy of the default configuration."""
    return copy_config(DEFAULT_CONFIG)


def describe_settings(config: dict[str, Any]) -> dict[str, Any]:
    """Flatten the interesting keys of a config dict for display."""
    keys = [
        "lego.base_path",
        "lego.dns_provider",
        "certificate.email",
        "certificate.hosts",
        "radius.enabled",
        "captive.enabled",
        "keystore.no_bundle",
    ]
    return {key: get_nested_value(config, key) for key in keys}
