from __future__ import annotations

import os
from enum import Enum
from typing import Any

from argon2 import Type
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class HashAlgorithm(str, Enum):
    """Argon2 variants accepted as the password hashing target."""

    ARGON2ID = "argon2id"
    ARGON2I = "argon2i"
    ARGON2D = "argon2d"

    @property
    def argon2_type(self) -> Type:
        return {
            HashAlgorithm.ARGON2ID: Type.ID,
            HashAlgorithm.ARGON2I: Type.I,
            HashAlgorithm.ARGON2D: Type.D,
        }[self]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication subsystem."""

    lifetime: int = env_field(
        60 * 60 * 24 * 14,
        "AUTH_LIFETIME",
        description="Absolute lifetime of a remember token in seconds",
    )
    cookie_lifetime: int = env_field(
        60 * 60 * 24,
        "AUTH_COOKIE_LIFETIME",
        description="TTL of the auto-login cookie issued at login, in seconds",
    )
    cookie_name: str = env_field("authautologin", "AUTH_COOKIE_NAME")
    session_cookie_name: str = env_field("session_id", "AUTH_SESSION_COOKIE_NAME")
    session_ttl_seconds: int = env_field(60 * 60 * 24, "AUTH_SESSION_TTL")
    cookie_secure: bool = env_field(True, "AUTH_COOKIE_SECURE")
    cookie_samesite: str = env_field("lax", "AUTH_COOKIE_SAMESITE")
    cookie_path: str = env_field("/", "AUTH_COOKIE_PATH")
    login_role: str = env_field(
        "login",
        "AUTH_LOGIN_ROLE",
        description="Role a user must hold for credential login to succeed",
    )
    target_hash_algorithm: HashAlgorithm = env_field(
        HashAlgorithm.ARGON2ID, "AUTH_HASH_ALGORITHM"
    )
    hash_time_cost: int = env_field(3, "AUTH_HASH_TIME_COST")
    hash_memory_cost: int = env_field(65536, "AUTH_HASH_MEMORY_COST")
    hash_parallelism: int = env_field(4, "AUTH_HASH_PARALLELISM")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    database_url: str = env_field(
        "postgresql://localhost:5432/sessionauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    state_root: str | None = env_field(
        None,
        "AUTH_STATE_ROOT",
        description="Directory for memory store snapshots; unset keeps state in process only",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("target_hash_algorithm", mode="before")
    @classmethod
    def _validate_algorithm(cls, value: Any) -> HashAlgorithm:
        if isinstance(value, str):
            value = value.strip().lower()
        return HashAlgorithm(value)

    @field_validator(
        "lifetime",
        "cookie_lifetime",
        "session_ttl_seconds",
        "hash_time_cost",
        "hash_memory_cost",
        "hash_parallelism",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"lax", "strict", "none"}:
            raise ValueError("cookie_samesite must be lax, strict or none")
        return normalized


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
