"""Configuration models and loaders for tenantlink."""

from .settings import (
    APP_VERSION,
    DEFAULT_API_URL,
    DEFAULT_API_VERSION,
    DEFAULT_CONFIG_PATH,
    AppCredential,
    AppSettings,
    decode_private_key,
    load_settings,
)

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
