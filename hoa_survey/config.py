"""Configuration utilities for the survey service.

This module loads application configuration with the following rules:
- Primary source: `hoa_config.json` at the project root.
- Overrides: environment variables, then optional text files under `config/`.
- Validation: Pydantic models enforce required fields and value constraints.
"""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator, model_validator


CONFIG_DIR = Path("config")
ROOT_CONFIG = Path("hoa_config.json")
DEV_SECRET = "development-only-secret-change-me"
logger = logging.getLogger(__name__)


def _read_config_file(rel_path: str) -> Optional[str]:
    path = CONFIG_DIR / rel_path
    try:
        if path.exists():
            return path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to read override %s: %s", path, e)
        return None
    return None


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(key, default)


class DatabaseConfig(BaseModel):
    dsn: str

    @field_validator("dsn")
    @classmethod
    def dsn_must_be_non_empty(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("database.dsn must be a non-empty string")
        return v


class EncryptionConfig(BaseModel):
    secret: str

    @field_validator("secret")
    @classmethod
    def secret_must_be_non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("encryption.secret (ENCRYPTION_KEY or JWT_SECRET) must be set")
        return v


class StreamingConfig(BaseModel):
    default_batch_size: int = Field(default=100, ge=1)
    max_batch_size: int = Field(default=2000, ge=1)

    @model_validator(mode="after")
    def default_within_max(self) -> "StreamingConfig":
        if self.default_batch_size > self.max_batch_size:
            raise ValueError("streaming.default_batch_size must not exceed streaming.max_batch_size")
        return self


class CacheConfig(BaseModel):
    ttl_seconds: int = Field(default=3600, gt=0)
    directory: str = Field(default=".cache/streams")


class AppConfig(BaseModel):
    database: DatabaseConfig
    encryption: EncryptionConfig
    streaming: StreamingConfig
    cache: CacheConfig
    log_level: str = "INFO"


def _read_json_file(path: Path) -> dict:
    try:
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error("Failed to read JSON config %s: %s", path, e)
    return {}


def load_config() -> AppConfig:
    """Load configuration with validation.

    Precedence (highest first):
    1) Environment variables
    2) Text files in `config/` (optional)
    3) hoa_config.json at project root (primary base)
    4) Safe defaults for development
    """

    base = _read_json_file(ROOT_CONFIG)

    def _base(path: str, default: Optional[str] = None) -> Optional[str]:
        cur: object = base
        for key in path.split("."):
            if not isinstance(cur, dict) or key not in cur:
                return default
            cur = cur[key]
        return str(cur) if cur is not None else default

    dsn = (
        _env("TEST_DATABASE_URL")
        or _env("DATABASE_URL")
        or _read_config_file("database.url")
        or _base("database.dsn")
        or "sqlite+pysqlite:///:memory:"
    )

    # The original deployment shared one secret for JWT signing and field crypto
    secret = (
        _env("ENCRYPTION_KEY")
        or _env("JWT_SECRET")
        or _read_config_file("encryption.key")
        or _base("encryption.secret")
        or DEV_SECRET
    )

    default_batch = _env("STREAM_DEFAULT_BATCH_SIZE") or _base("streaming.default_batch_size", "100")
    max_batch = _env("STREAM_MAX_BATCH_SIZE") or _base("streaming.max_batch_size", "2000")
    ttl = _env("STREAM_CACHE_TTL_SECONDS") or _read_config_file("cache.ttl_seconds") or _base("cache.ttl_seconds", "3600")
    cache_dir = _env("STREAM_CACHE_DIR") or _base("cache.directory", ".cache/streams")
    log_level = _env("LOG_LEVEL") or _read_config_file("log.level") or _base("log_level", "INFO")

    try:
        cfg = AppConfig(
            database=DatabaseConfig(dsn=dsn),
            encryption=EncryptionConfig(secret=secret),
            streaming=StreamingConfig(
                default_batch_size=int(str(default_batch).strip()),
                max_batch_size=int(str(max_batch).strip()),
            ),
            cache=CacheConfig(ttl_seconds=int(str(ttl).strip()), directory=str(cache_dir)),
            log_level=str(log_level).strip().upper(),
        )
    except (PydanticValidationError, ValueError) as e:
        logger.error("Invalid application configuration: %s", e)
        raise
    if cfg.encryption.secret == DEV_SECRET:
        logger.warning("encryption_secret_default_in_use set ENCRYPTION_KEY for real deployments")
    return cfg


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    return load_config()


__all__ = [
    "AppConfig",
    "DatabaseConfig",
    "EncryptionConfig",
    "StreamingConfig",
    "CacheConfig",
    "load_config",
    "get_config",
]
