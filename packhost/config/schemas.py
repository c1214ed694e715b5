"""
Configuration schemas for packhost.

Security:
    The admin token uses SecretStr to prevent accidental logging.
    Access the value with `.get_secret_value()`.
"""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from packhost.packs.verify import SignaturePolicy

ENV_PREFIX = "PACKHOST_"


class AppSettings(BaseModel):
    """
    Application settings model.

    Populated from ``PACKHOST_*`` environment variables by
    :func:`settings_from_env`; every field can also be passed directly.
    """

    model_config = ConfigDict(extra="ignore")

    # Service identity
    service_name: str = "packhost"
    environment: str = "development"
    debug: bool = False

    # Pack lifecycle
    pack_index_url: str | None = Field(
        default=None, description="Locator of the pack index (path, https://, s3://...)"
    )
    pack_cache_dir: str = Field(default=".packs", description="On-disk artifact cache")
    pack_cache_max_disk_bytes: int = Field(default=1024 * 1024 * 1024, gt=0)
    pack_public_key: str | None = Field(
        default=None, description="Trust key, ed25519:<base64>"
    )
    signature_policy: SignaturePolicy = SignaturePolicy.AUTO
    refresh_interval_seconds: float = Field(default=30.0, gt=0)
    reconcile_timeout_seconds: float = Field(default=60.0, gt=0)
    fetch_timeout_seconds: float = Field(default=30.0, gt=0)
    fetch_max_attempts: int = Field(default=3, ge=1)

    # Object stores
    s3_endpoint: str | None = None
    azblob_account: str | None = None

    # Sessions and dedup
    dedup_retention_seconds: float = Field(default=600.0, gt=0)
    session_ttl_seconds: float = Field(default=86400.0, gt=0)
    redis_url: str | None = Field(default=None, description="Shared store; in-memory when unset")

    # Admin
    admin_token: SecretStr | None = None

    @field_validator("pack_public_key", "redis_url", "s3_endpoint", "azblob_account", "pack_index_url")
    @classmethod
    def _blank_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


def settings_from_env(environ: Mapping[str, str] | None = None) -> AppSettings:
    """
    Build settings from ``PACKHOST_*`` variables.

    Unset variables keep the model defaults.
    """
    env = os.environ if environ is None else environ
    values = {}
    for name in AppSettings.model_fields:
        raw = env.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None:
            values[name] = raw
    if "admin_token" in values and not values["admin_token"]:
        del values["admin_token"]
    return AppSettings(**values)
