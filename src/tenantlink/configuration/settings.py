"""Typed settings for the tenantlink GitHub App integration.

Settings are Pydantic models so the service, the webhook server and the CLI
all rely on validated configuration. Values come from an optional JSON file
and are then overridden by environment variables. Credential material is held
as ``SecretStr`` and never rendered in summaries.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from tenantlink.errors import ConfigurationError, MissingCredentialError


APP_VERSION = "0.1.0"
DEFAULT_CONFIG_PATH = Path.home() / ".tenantlink" / "config.json"
DEFAULT_API_URL = "https://api.github.com"
DEFAULT_API_VERSION = "2022-11-28"

_PEM_MARKER = "-----BEGIN"
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class AppCredential(BaseModel):
    """Process-wide GitHub App credential, immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    app_id: str = Field(..., description="GitHub App identifier")
    private_key: SecretStr = Field(..., description="PEM encoded RSA private key")
    webhook_secret: SecretStr = Field(..., description="Shared webhook HMAC secret")


class AppSettings(BaseModel):
    """Runtime configuration for the integration service."""

    # Credentials
    app_id: Optional[str] = Field(default=None, description="GitHub App identifier")
    private_key: Optional[SecretStr] = Field(default=None, description="PEM private key")
    webhook_secret: Optional[SecretStr] = Field(default=None, description="Webhook secret")

    # Provider API
    api_url: str = Field(default=DEFAULT_API_URL, description="GitHub REST API base URL")
    api_version: str = Field(default=DEFAULT_API_VERSION, description="Pinned REST API version")
    user_agent: str = Field(
        default=f"tenantlink/{APP_VERSION}", description="Client identifier sent to GitHub"
    )
    max_retries: int = Field(default=3, ge=0, le=10, description="Retry budget per request")
    request_timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")

    # Feature flags
    enable_webhooks: bool = Field(default=True, description="Accept webhook deliveries")
    enable_real_time_sync: bool = Field(default=True, description="Re-sync project data on push")
    enable_compliance_checks: bool = Field(default=True, description="Run PR compliance checks")

    # Webhook processing
    history_size: int = Field(default=1000, ge=1, description="Processed event history cap")
    deduplicate_deliveries: bool = Field(
        default=False, description="Skip repeated deliveries with a known delivery id"
    )

    # Server
    listen_host: str = Field(default="127.0.0.1", description="Webhook server bind host")
    listen_port: int = Field(default=3000, ge=1, le=65535, description="Webhook server port")
    webhook_path: str = Field(default="/webhook/github", description="Webhook endpoint path")

    log_level: str = Field(default="INFO", description="Root log level")

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("webhook_path")
    @classmethod
    def _validate_webhook_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("webhook_path must start with '/'")
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")
        return level

    def credential(self) -> AppCredential:
        """Build the immutable app credential.

        Raises:
            MissingCredentialError: If any credential component is absent
        """
        missing = [
            name
            for name, value in (
                ("app_id", self.app_id),
                ("private_key", self.private_key),
                ("webhook_secret", self.webhook_secret),
            )
            if _is_blank(value)
        ]
        if missing:
            raise MissingCredentialError(
                f"Missing GitHub App configuration: {', '.join(missing)}",
                details={"missing": missing},
            )
        return AppCredential(
            app_id=self.app_id,
            private_key=SecretStr(decode_private_key(self.private_key.get_secret_value())),
            webhook_secret=self.webhook_secret,
        )

    def redacted(self) -> Dict[str, Any]:
        """Configuration summary safe for display."""
        payload = self.model_dump(mode="json")
        payload["private_key"] = "***" if self.private_key else None
        payload["webhook_secret"] = "***" if self.webhook_secret else None
        payload["has_credentials"] = bool(self.app_id and self.private_key and self.webhook_secret)
        return payload


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


_ENV_OVERRIDES: Tuple[Tuple[str, Tuple[str, ...], str], ...] = (
    ("app_id", ("TENANTLINK_APP_ID", "GITHUB_APP_ID"), "str"),
    ("private_key", ("TENANTLINK_PRIVATE_KEY", "GITHUB_APP_PRIVATE_KEY"), "str"),
    ("webhook_secret", ("TENANTLINK_WEBHOOK_SECRET", "GITHUB_APP_WEBHOOK_SECRET"), "str"),
    ("api_url", ("TENANTLINK_API_URL",), "str"),
    ("max_retries", ("TENANTLINK_MAX_RETRIES",), "int"),
    ("request_timeout", ("TENANTLINK_REQUEST_TIMEOUT",), "float"),
    ("enable_webhooks", ("TENANTLINK_ENABLE_WEBHOOKS", "ENABLE_WEBHOOKS"), "bool"),
    ("enable_real_time_sync", ("TENANTLINK_ENABLE_REAL_TIME_SYNC", "ENABLE_REAL_TIME_SYNC"), "bool"),
    (
        "enable_compliance_checks",
        ("TENANTLINK_ENABLE_COMPLIANCE_CHECKS", "ENABLE_COMPLIANCE_CHECKS"),
        "bool",
    ),
    ("history_size", ("TENANTLINK_HISTORY_SIZE",), "int"),
    ("deduplicate_deliveries", ("TENANTLINK_DEDUPLICATE_DELIVERIES",), "bool"),
    ("listen_host", ("TENANTLINK_HOST",), "str"),
    ("listen_port", ("TENANTLINK_PORT", "PORT"), "int"),
    ("webhook_path", ("TENANTLINK_WEBHOOK_PATH", "WEBHOOK_ENDPOINT"), "str"),
    ("log_level", ("TENANTLINK_LOG_LEVEL", "LOG_LEVEL"), "str"),
)


def load_settings(
    path: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> AppSettings:
    """Load settings from an optional JSON file plus environment overrides.

    Args:
        path: JSON config file. ``None`` uses the default location if it exists
        env: Environment mapping (defaults to ``os.environ``)
        overrides: Explicit values applied last

    Returns:
        Validated settings

    Raises:
        ConfigurationError: If the file is unreadable or values are invalid
    """
    env = os.environ if env is None else env
    data: Dict[str, Any] = {}

    config_path = path or DEFAULT_CONFIG_PATH
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot read settings file {config_path}: {exc}") from exc
    elif path is not None:
        raise ConfigurationError(f"Settings file not found at {path}")

    data.update(_env_overrides(env))
    data.update(overrides or {})

    try:
        return AppSettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key, names, kind in _ENV_OVERRIDES:
        found = _first_set(env, names)
        if found is None:
            continue
        name, raw = found
        try:
            if kind == "bool":
                values[key] = raw.strip().lower() in {"1", "true", "yes", "on"}
            elif kind == "int":
                values[key] = int(raw)
            elif kind == "float":
                values[key] = float(raw)
            else:
                values[key] = raw
        except ValueError as exc:
            raise ConfigurationError(
                f"Invalid value for {name}: expected {kind}, got {raw!r}",
                details={"variable": name, "setting": key},
            ) from exc
    return values


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, SecretStr):
        value = value.get_secret_value()
    return not str(value).strip()


def _first_set(
    env: Mapping[str, str], names: Iterable[str]
) -> Optional[Tuple[str, str]]:
    for name in names:
        value = env.get(name)
        if value is not None and value != "":
            return name, value
    return None


def decode_private_key(raw: str) -> str:
    """Normalize private key material to PEM text.

    Accepts PEM text (with literal ``\\n`` escapes as commonly found in
    environment variables), a path to a PEM file, or base64 encoded PEM.

    Raises:
        ConfigurationError: If the value cannot be resolved to a PEM key
    """
    value = raw.strip()
    if _PEM_MARKER in value:
        return value.replace("\\n", "\n")

    if _is_key_file(value):
        return decode_private_key(Path(value).expanduser().read_text(encoding="utf-8"))

    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ConfigurationError("GitHub App private key is not PEM or base64 PEM") from exc
    if _PEM_MARKER not in decoded:
        raise ConfigurationError("Decoded GitHub App private key is not PEM encoded")
    return decoded.strip()


def _is_key_file(value: str) -> bool:
    # base64 keys exceed the file name length limit on most filesystems
    try:
        return Path(value).expanduser().is_file()
    except (OSError, ValueError):
        return False


__all__ = [
    "APP_VERSION",
    "DEFAULT_API_URL",
    "DEFAULT_API_VERSION",
    "DEFAULT_CONFIG_PATH",
    "AppCredential",
    "AppSettings",
    "decode_private_key",
    "load_settings",
]
