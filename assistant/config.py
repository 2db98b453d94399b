"""Configuration for the Keycloak assistant service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml


PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_verify_setting(value: Optional[str]) -> str | bool:
    if value is None:
        return True
    lowered = value.strip().lower()
    if lowered in {"", "default", "1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return str(Path(value).expanduser())


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


@dataclass(frozen=True)
class AdminApiOptions:
    """Credentials used to obtain tokens for the Keycloak Admin REST API."""

    base_url: str
    client_id: str
    client_secret: str
    realm: str = "master"
    use_legacy_auth_path: bool = False
    verify: str | bool = True
    timeout: float = 30.0

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "AdminApiOptions":
        required_fields = {"base_url", "client_id", "client_secret"}
        missing = {key for key in required_fields if not str(data.get(key) or "").strip()}
        if missing:
            raise ValueError(f"Missing required admin API settings: {', '.join(sorted(missing))}")
        return AdminApiOptions(
            base_url=str(data["base_url"]).strip().rstrip("/"),
            client_id=str(data["client_id"]).strip(),
            client_secret=str(data["client_secret"]),
            realm=str(data.get("realm") or "master").strip(),
            use_legacy_auth_path=bool(data.get("use_legacy_auth_path", False)),
            verify=data.get("verify", True),  # type: ignore[arg-type]
            timeout=float(data.get("timeout", 30.0)),  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class KeycloakOptions:
    """Settings for the interactive OpenID Connect login."""

    base_url: str
    realm: str
    client_id: str
    client_secret: str
    primary_realm: str
    verify: str | bool = True
    scopes: Tuple[str, ...] = ("openid", "profile", "email", "roles")

    @property
    def issuer(self) -> str:
        return f"{self.base_url.rstrip('/')}/realms/{self.realm}"

    @property
    def metadata_url(self) -> str:
        return f"{self.issuer}/.well-known/openid-configuration"


@dataclass(frozen=True)
class SmtpOptions:
    """Mail relay used to forward access requests to support."""

    host: Optional[str] = None
    port: int = 25
    starttls: bool = True
    username: Optional[str] = None
    password: Optional[str] = None
    sender: Optional[str] = None
    support_recipient: Optional[str] = None
    timeout: float = 30.0

    @property
    def is_configured(self) -> bool:
        return bool(_clean(self.host) and _clean(self.support_recipient) and self.from_address)

    @property
    def from_address(self) -> Optional[str]:
        return _clean(self.sender) or _clean(self.username) or None

    @staticmethod
    def from_env(env: Mapping[str, str]) -> "SmtpOptions":
        raw_port = _clean(env.get("ASSISTANT_SMTP_PORT"))
        try:
            port = int(raw_port) if raw_port else 25
        except ValueError as exc:
            raise ValueError(f"ASSISTANT_SMTP_PORT must be a number, got {raw_port!r}") from exc
        return SmtpOptions(
            host=_clean(env.get("ASSISTANT_SMTP_HOST")) or None,
            port=port,
            starttls=_env_flag(env.get("ASSISTANT_SMTP_STARTTLS"), default=True),
            username=_clean(env.get("ASSISTANT_SMTP_USER")) or None,
            password=env.get("ASSISTANT_SMTP_PASSWORD") or None,
            sender=_clean(env.get("ASSISTANT_SMTP_FROM")) or None,
            support_recipient=_clean(env.get("ASSISTANT_SMTP_SUPPORT_TO")) or None,
        )


@dataclass(frozen=True)
class Settings:
    """Aggregated runtime settings resolved from ``ASSISTANT_*`` variables."""

    keycloak: KeycloakOptions
    admin: AdminApiOptions
    session_secret: Optional[str]
    session_secure: bool = False
    database_path: Optional[str] = None
    confluence: Optional[str] = None
    confluence_labels: Tuple[str, ...] = field(default_factory=tuple)
    wiki_template_path: Path = PROJECT_ROOT / "config" / "wiki_template.yaml"
    realm_links_path: Path = PROJECT_ROOT / "config" / "realm_links.yaml"
    smtp: SmtpOptions = field(default_factory=SmtpOptions)

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        kc_base = _clean(env.get("ASSISTANT_KEYCLOAK_BASE_URL")).rstrip("/")
        if not kc_base:
            raise RuntimeError("ASSISTANT_KEYCLOAK_BASE_URL must be configured")
        realm = _clean(env.get("ASSISTANT_KEYCLOAK_REALM")) or "master"
        verify = _parse_verify_setting(env.get("ASSISTANT_KEYCLOAK_VERIFY"))

        keycloak = KeycloakOptions(
            base_url=kc_base,
            realm=realm,
            client_id=_clean(env.get("ASSISTANT_KEYCLOAK_CLIENT_ID")),
            client_secret=env.get("ASSISTANT_KEYCLOAK_CLIENT_SECRET", ""),
            primary_realm=_clean(env.get("ASSISTANT_KEYCLOAK_PRIMARY_REALM")) or realm,
            verify=verify,
        )
        admin = AdminApiOptions.from_dict(
            {
                "base_url": _clean(env.get("ASSISTANT_ADMIN_BASE_URL")) or kc_base,
                "realm": _clean(env.get("ASSISTANT_ADMIN_REALM")) or "master",
                "client_id": _clean(env.get("ASSISTANT_ADMIN_CLIENT_ID")),
                "client_secret": env.get("ASSISTANT_ADMIN_CLIENT_SECRET", ""),
                "use_legacy_auth_path": _env_flag(env.get("ASSISTANT_ADMIN_LEGACY_AUTH_PATH")),
                "verify": verify,
            }
        )

        labels = tuple(
            item.strip()
            for item in env.get("ASSISTANT_CONFLUENCE_LABELS", "").split(",")
            if item.strip()
        )

        return Settings(
            keycloak=keycloak,
            admin=admin,
            session_secret=env.get("ASSISTANT_SESSION_SECRET"),
            session_secure=_env_flag(env.get("ASSISTANT_SESSION_SECURE")),
            database_path=env.get("ASSISTANT_DB_PATH"),
            confluence=env.get("ASSISTANT_CONFLUENCE"),
            confluence_labels=labels,
            wiki_template_path=resolve_config_path(
                env.get("ASSISTANT_WIKI_TEMPLATE"), "wiki_template.yaml"
            ),
            realm_links_path=resolve_config_path(
                env.get("ASSISTANT_REALM_LINKS"), "realm_links.yaml"
            ),
            smtp=SmtpOptions.from_env(env),
        )


def load_yaml_file(path: Path) -> Dict[str, object]:
    """Load a YAML document that must contain a mapping at the top level."""
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    return raw


def resolve_config_path(env_value: Optional[str], default_name: str) -> Path:
    """Resolve the path to a configuration file under ``config/``."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (PROJECT_ROOT / "config" / default_name).resolve(strict=False)


__all__ = [
    "AdminApiOptions",
    "KeycloakOptions",
    "Settings",
    "SmtpOptions",
    "load_yaml_file",
    "resolve_config_path",
]
