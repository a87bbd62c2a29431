"""Configuration types with environment variable support.

Each section reads its own environment prefix, e.g.
``DOMAINMAPPER_REGISTRY_MAX_DOMAINS_PER_OWNER=3`` or
``DOMAINMAPPER_CERTS_AUTOMATED_CA_ENABLED=true``. A YAML or TOML file can
supply the same keys grouped by section; environment variables win over
file values.

Settings are built once with :func:`load_settings` and handed to the
components that need them. There is no process-wide cached instance.
"""

from __future__ import annotations

import json
import os
import tomllib
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def _section_config(prefix: str) -> SettingsConfigDict:
    return SettingsConfigDict(
        env_prefix=prefix,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class RegistrySettings(BaseSettings):
    """Mapping storage and ownership policy."""

    model_config = _section_config("DOMAINMAPPER_REGISTRY_")

    path: str = Field(
        default="domainmapper.db",
        description="SQLite database file. Use ':memory:' for an in-memory registry.",
    )
    max_domains_per_owner: int = Field(
        default=1,
        ge=1,
        description="Maximum number of mappings a single owner may hold.",
    )
    allow_reverify_rejected: bool = Field(
        default=False,
        description="Allow rejected mappings to be verified again instead of re-added.",
    )


class VerificationSettings(BaseSettings):
    """DNS TXT challenge settings."""

    model_config = _section_config("DOMAINMAPPER_DNS_")

    token_prefix: str = Field(
        default="domainmapper-verification=",
        description="Fixed prefix that marks platform-issued TXT tokens.",
    )
    strip_www: bool = Field(
        default=True,
        description="Strip a leading 'www.' when normalizing domains.",
    )
    nameservers: list[str] = Field(
        default_factory=list,
        description="Nameservers for the primary lookup. Empty uses the system resolver.",
    )
    propagation_resolvers: dict[str, str] = Field(
        default_factory=lambda: {
            "8.8.8.8": "Google",
            "1.1.1.1": "Cloudflare",
            "208.67.222.222": "OpenDNS",
            "9.9.9.9": "Quad9",
        },
        description="Public resolver panel used to estimate propagation (address -> label).",
    )
    timeout: float = Field(
        default=5.0,
        gt=0,
        le=10.0,
        description="Timeout in seconds for a single DNS lookup.",
    )
    subprocess_fallback: bool = Field(
        default=True,
        description="Fall back to dig/nslookup when the native resolver finds nothing.",
    )
    fallback_nameservers: list[str] = Field(
        default_factory=lambda: ["8.8.8.8", "8.8.4.4", "1.1.1.1", "1.0.0.1"],
        description="Servers queried by the dig/nslookup fallback.",
    )


class CertificateSettings(BaseSettings):
    """Certificate inspection and provisioning settings."""

    model_config = _section_config("DOMAINMAPPER_CERTS_")

    tls_timeout: float = Field(
        default=30.0,
        gt=0,
        le=30.0,
        description="Timeout in seconds for the TLS probe.",
    )
    certs_dir: str = Field(
        default="/etc/ssl/domainmapper",
        description="Directory holding <domain>.crt and <domain>.key files.",
    )
    expiry_warning_days: int = Field(
        default=30,
        ge=0,
        description="Emit cert_expiring when days remaining is at or below this value.",
    )
    sweep_concurrency: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Maximum simultaneous TLS probes during a renewal sweep.",
    )
    automated_ca_enabled: bool = Field(
        default=False,
        description="Enable the automated CA (ACME) provisioning path.",
    )
    acme_contact_email: str = Field(
        default="admin@localhost",
        description="Contact email passed to the ACME client.",
    )
    acme_command_template: str = Field(
        default=(
            "certbot certonly --webroot -w /var/www/letsencrypt "
            "-d {domain} --non-interactive --agree-tos --email {email}"
        ),
        description="ACME client command with {domain} and {email} placeholders.",
    )
    acme_client_paths: list[str] = Field(
        default_factory=lambda: [
            "/usr/bin/certbot",
            "/usr/local/bin/certbot",
            "/opt/certbot/bin/certbot",
        ],
        description="Locations checked for a local ACME client binary.",
    )
    managed_cdn_ns_marker: str = Field(
        default="cloudflare.com",
        description="Nameserver substring that identifies managed CDN delegation.",
    )
    cdn_ssl_mode: Literal["off", "flexible", "full", "strict"] = Field(
        default="full",
        description="SSL mode requested from the CDN when enabling SSL on a zone.",
    )


class ProxySettings(BaseSettings):
    """Reverse proxy config generation settings."""

    model_config = _section_config("DOMAINMAPPER_PROXY_")

    upstream_url: str = Field(
        default="http://127.0.0.1:8080",
        description="Storefront backend that custom domains are proxied to.",
    )


class CloudflareSettings(BaseSettings):
    """Managed CDN API client settings."""

    model_config = _section_config("DOMAINMAPPER_CLOUDFLARE_")

    api_token: str | None = Field(
        default=None,
        description="Bearer token for the CDN API. Unset disables CDN calls.",
    )
    api_url: str = Field(
        default="https://api.cloudflare.com/client/v4",
        description="CDN API base URL.",
    )
    timeout: float = Field(default=30.0, gt=0)


class NotificationSettings(BaseSettings):
    """Lifecycle event delivery."""

    model_config = _section_config("DOMAINMAPPER_NOTIFY_")

    webhook_url: str | None = Field(
        default=None,
        description="POST lifecycle events to this URL. Unset only logs them.",
    )
    webhook_timeout: float = Field(default=10.0, gt=0)


class HealthSettings(BaseSettings):
    """Health sampling of live domains."""

    model_config = _section_config("DOMAINMAPPER_HEALTH_")

    timeout: float = Field(default=30.0, gt=0)
    concurrency: int = Field(default=10, ge=1, le=50)


_SECTIONS: dict[str, type[BaseSettings]] = {
    "registry": RegistrySettings,
    "verification": VerificationSettings,
    "certificates": CertificateSettings,
    "proxy": ProxySettings,
    "cloudflare": CloudflareSettings,
    "notifications": NotificationSettings,
    "health": HealthSettings,
}


class DomainMapperSettings(BaseModel):
    """All settings, grouped by section.

    Example:
        settings = load_settings("domainmapper.yaml")
        print(settings.registry.max_domains_per_owner)
        print(settings.certificates.tls_timeout)
    """

    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    certificates: CertificateSettings = Field(default_factory=CertificateSettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    cloudflare: CloudflareSettings = Field(default_factory=CloudflareSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)

    def to_display_dict(self) -> dict[str, Any]:
        """Export configuration as a nested dictionary for display.

        Secrets are masked.
        """
        display = self.model_dump()
        if display["cloudflare"].get("api_token"):
            display["cloudflare"]["api_token"] = "********"
        return display

    def to_env_dict(self) -> dict[str, str]:
        """Export configuration as environment variables."""
        result: dict[str, str] = {}
        for name, section_cls in _SECTIONS.items():
            prefix = section_cls.model_config.get("env_prefix", "")
            section = getattr(self, name)
            for key, value in section.model_dump().items():
                if value is None:
                    continue
                if isinstance(value, bool):
                    text = str(value).lower()
                elif isinstance(value, (list, dict)):
                    text = json.dumps(value)
                else:
                    text = str(value)
                result[f"{prefix}{key.upper()}"] = text
        return result


def load_settings(
    config_file: str | Path | None = None,
    **overrides: dict[str, Any],
) -> DomainMapperSettings:
    """Build settings from environment, an optional file and explicit overrides.

    Args:
        config_file: YAML or TOML file with one table per section.
        overrides: Per-section dictionaries applied last, e.g.
            ``registry={"path": ":memory:"}``.

    Returns:
        A fully validated DomainMapperSettings.

    Raises:
        ValueError: If a section name is unknown or a value is invalid.
    """
    file_config: dict[str, Any] = load_config_from_file(config_file) if config_file else {}

    unknown = (set(file_config) | set(overrides)) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown configuration section(s): {', '.join(sorted(unknown))}")

    sections: dict[str, BaseSettings] = {}
    for name, section_cls in _SECTIONS.items():
        prefix = section_cls.model_config.get("env_prefix", "")
        values = {
            key: value
            for key, value in (file_config.get(name) or {}).items()
            if f"{prefix}{key.upper()}" not in os.environ
        }
        values.update(overrides.get(name) or {})
        sections[name] = section_cls(**values)

    return DomainMapperSettings(**sections)
