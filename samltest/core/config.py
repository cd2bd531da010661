"""Platform configuration.

Settings come from dataclass defaults, then ``~/.samltest/config.yaml`` (or
the file given with ``--config``), then ``SAMLTEST_*`` environment variables.
"""

from __future__ import annotations

import logging
import os
import secrets
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".samltest"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

ENV_PREFIX = "SAMLTEST_"

DEFAULT_ISSUER = "http://localhost:3001"


def _optional_path(value: str | Path | None) -> Path | None:
    return Path(value).expanduser() if value else None


@dataclass
class ServerSettings:
    """HTTP server configuration settings."""

    host: str = "127.0.0.1"
    port: int = 3001
    debug: bool = False
    # Where /saml/acs sends the browser with the session token or error
    frontend_url: str = "http://localhost:5173"


@dataclass
class SamlSettings:
    """The platform's own SAML identity and protocol tolerances."""

    issuer: str = DEFAULT_ISSUER
    callback_url: str | None = None
    idp_sso_url: str | None = None
    cert_dir: Path | None = None
    clock_skew_seconds: int = 180
    assertion_lifetime_seconds: int = 300
    trust_self: bool = True

    def __post_init__(self) -> None:
        self.cert_dir = _optional_path(self.cert_dir)

    @property
    def acs_url(self) -> str:
        """Assertion Consumer Service URL of the SP role."""
        return self.callback_url or f"{self.issuer.rstrip('/')}/saml/acs"

    @property
    def sso_url(self) -> str:
        """Single Sign-On URL of the IdP role."""
        return self.idp_sso_url or f"{self.issuer.rstrip('/')}/saml/idp/sso"


@dataclass
class AuthSettings:
    """Management API authentication and session tokens."""

    enabled: bool = True
    jwt_secret: str | None = None
    token_ttl_minutes: int = 7 * 24 * 60


@dataclass
class DatabaseSettings:
    path: Path | None = None
    encrypted: bool = False

    def __post_init__(self) -> None:
        self.path = _optional_path(self.path)


@dataclass
class LoggingSettings:
    level: str = "INFO"
    file: Path | None = None

    def __post_init__(self) -> None:
        self.file = _optional_path(self.file)


SECTIONS: dict[str, type] = {
    "server": ServerSettings,
    "saml": SamlSettings,
    "auth": AuthSettings,
    "database": DatabaseSettings,
    "logging": LoggingSettings,
}


def _plain(values: dict[str, Any]) -> dict[str, Any]:
    return {key: str(value) if isinstance(value, Path) else value for key, value in values.items()}


def _section_from_dict(name: str, data: dict[str, Any] | None) -> Any:
    settings_type = SECTIONS[name]
    known = {f.name for f in fields(settings_type)}
    values = dict(data or {})
    for key in sorted(values.keys() - known):
        logger.warning("Ignoring unknown setting %s.%s", name, key)
        del values[key]
    return settings_type(**{key: value for key, value in values.items() if value is not None})


@dataclass
class AppConfig:
    """Main application configuration."""

    server: ServerSettings = field(default_factory=ServerSettings)
    saml: SamlSettings = field(default_factory=SamlSettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    config_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: Path | None = None) -> AppConfig:
        """Build a config from parsed YAML; missing sections and keys keep their defaults."""
        sections = {name: _section_from_dict(name, data.get(name)) for name in SECTIONS}
        return cls(**sections, config_path=config_path)

    def to_dict(self) -> dict[str, Any]:
        """Plain dictionary for YAML output, with paths as strings."""
        return {name: _plain(asdict(getattr(self, name))) for name in SECTIONS}

    def save(self, path: Path | None = None) -> None:
        """Write the configuration as YAML to ``path``, ``config_path`` or the default file."""
        save_path = path or self.config_path or DEFAULT_CONFIG_FILE
        save_path.parent.mkdir(parents=True, exist_ok=True)
        save_path.write_text(yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False))

    def token_secret(self) -> str:
        """Return the configured JWT secret, creating a process-local one if unset."""
        if not self.auth.jwt_secret:
            logger.warning("No JWT secret configured; tokens will not survive a restart")
            self.auth.jwt_secret = secrets.token_hex(32)
        return self.auth.jwt_secret


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes", "on")


# (variable suffix, section, field, parser)
ENV_OVERRIDES: list[tuple[str, str, str, Callable[[str], Any]]] = [
    ("HOST", "server", "host", str),
    ("PORT", "server", "port", int),
    ("DEBUG", "server", "debug", _parse_bool),
    ("FRONTEND_URL", "server", "frontend_url", str),
    ("ISSUER", "saml", "issuer", str),
    ("CALLBACK_URL", "saml", "callback_url", str),
    ("IDP_SSO_URL", "saml", "idp_sso_url", str),
    ("CERT_DIR", "saml", "cert_dir", _optional_path),
    ("CLOCK_SKEW", "saml", "clock_skew_seconds", int),
    ("ASSERTION_LIFETIME", "saml", "assertion_lifetime_seconds", int),
    ("TRUST_SELF", "saml", "trust_self", _parse_bool),
    ("AUTH_ENABLED", "auth", "enabled", _parse_bool),
    ("JWT_SECRET", "auth", "jwt_secret", str),
    ("TOKEN_TTL_MINUTES", "auth", "token_ttl_minutes", int),
    ("DB_PATH", "database", "path", _optional_path),
    ("DB_ENCRYPTED", "database", "encrypted", _parse_bool),
    ("LOG_LEVEL", "logging", "level", str),
    ("LOG_FILE", "logging", "file", _optional_path),
]


def apply_env_overrides(config: AppConfig) -> AppConfig:
    """Overwrite settings from non-empty ``SAMLTEST_*`` variables; unparsable values are skipped."""
    for suffix, section, name, parse in ENV_OVERRIDES:
        variable = f"{ENV_PREFIX}{suffix}"
        raw = os.environ.get(variable)
        if not raw:
            continue
        try:
            value = parse(raw)
        except ValueError:
            logger.warning("Ignoring %s=%r: not a valid %s", variable, raw, name)
            continue
        setattr(getattr(config, section), name, value)
    return config


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load defaults, then the YAML file if present, then environment overrides.

    An unreadable or malformed file is logged and ignored rather than
    preventing startup.
    """
    config = AppConfig()

    file_path = config_path or DEFAULT_CONFIG_FILE
    if file_path.exists():
        try:
            data = yaml.safe_load(file_path.read_text()) or {}
            if not isinstance(data, dict):
                raise ValueError("top level must be a mapping")
            config = AppConfig.from_dict(data, config_path=file_path)
        except (OSError, yaml.YAMLError, ValueError, TypeError) as e:
            logger.warning("Ignoring invalid config file %s: %s", file_path, e)

    return apply_env_overrides(config)


def get_default_config_yaml() -> str:
    """Get the default config.yaml content as a string.

    Useful for generating example configuration files.
    """
    return """\
# SAML Test Platform Configuration File
# Environment variables override these settings (prefix: SAMLTEST_)

server:
  host: "127.0.0.1"
  port: 3001
  debug: false

  # Where /saml/acs sends the browser after login (token or error in the query)
  frontend_url: "http://localhost:5173"

saml:
  # Entity ID of this platform in both roles
  issuer: "http://localhost:3001"

  # SP Assertion Consumer Service URL (default: {issuer}/saml/acs)
  # callback_url: "http://localhost:3001/saml/acs"

  # IdP Single Sign-On URL (default: {issuer}/saml/idp/sso)
  # idp_sso_url: "http://localhost:3001/saml/idp/sso"

  # Directory holding saml-private-key.pem and saml-cert.pem
  # cert_dir: ~/.samltest/certs

  # Tolerated clock difference when checking assertion validity windows
  clock_skew_seconds: 180

  # Validity window of assertions issued by the IdP role
  assertion_lifetime_seconds: 300

  # Accept responses issued by this platform's own IdP role
  trust_self: true

auth:
  enabled: true
  # jwt_secret: "change-me"
  token_ttl_minutes: 10080

database:
  # path: ~/.samltest/samltest.db
  # Requires the sqlcipher3 driver and SAMLTEST_DB_KEY
  encrypted: false

logging:
  level: "INFO"
  # file: ~/.samltest/samltest.log
"""
