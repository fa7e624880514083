from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_REDIS_URL     = "redis://localhost:6379/0"
DEFAULT_ARTIFACT_ROOT = "./artifacts"
DEFAULT_REGION        = "us-east-1"


class ConfigError(ValueError):
    """A required setting is missing or invalid."""


@dataclass(frozen=True)
class Settings:
    database_url:     str
    redis_url:        str        = DEFAULT_REDIS_URL
    artifact_backend: str        = "s3"
    web_bucket:       str | None = None
    api_bucket:       str | None = None
    artifact_root:    str        = DEFAULT_ARTIFACT_ROOT
    aws_region:       str        = DEFAULT_REGION
    log_level:        str        = "INFO"


def load_settings(env: dict[str, str] | None = None) -> Settings:
    """
    Read settings from the environment.
    Fails fast with a clear message instead of half-starting.
    """
    env = os.environ if env is None else env

    database_url = env.get("DATABASE_URL")
    if not database_url:
        raise ConfigError("DATABASE_URL environment variable is required")

    backend = env.get("ARTIFACT_BACKEND", "s3").strip().lower()
    if backend not in ("s3", "local"):
        raise ConfigError(f"ARTIFACT_BACKEND must be 's3' or 'local', got {backend!r}")

    web_bucket = env.get("WEB_BUCKET_NAME")
    api_bucket = env.get("API_BUCKET_NAME")
    if backend == "s3" and not (web_bucket and api_bucket):
        raise ConfigError("WEB_BUCKET_NAME and API_BUCKET_NAME are required when ARTIFACT_BACKEND=s3")

    return Settings(
        database_url     = database_url,
        redis_url        = env.get("REDIS_URL", DEFAULT_REDIS_URL),
        artifact_backend = backend,
        web_bucket       = web_bucket,
        api_bucket       = api_bucket,
        artifact_root    = env.get("ARTIFACT_ROOT", DEFAULT_ARTIFACT_ROOT),
        aws_region       = env.get("AWS_REGION", DEFAULT_REGION),
        log_level        = env.get("LOG_LEVEL", "INFO").upper(),
    )
