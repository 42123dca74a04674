import os
import socket
from dataclasses import dataclass
from typing import Optional


def env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    value = os.getenv(key)
    if value is None or value == "":
        if required:
            raise RuntimeError(f"Missing required env var: {key}")
        return "" if default is None else str(default)
    return value


def env_int(key: str, default: int, minimum: Optional[int] = None) -> int:
    raw = env(key, default=str(default))
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"{key} must be an integer") from e
    if minimum is not None and value < minimum:
        raise RuntimeError(f"{key} must be >= {minimum}")
    return value


def env_float(key: str, default: float, positive: bool = False) -> float:
    raw = env(key, default=str(default))
    try:
        value = float(raw)
    except ValueError as e:
        raise RuntimeError(f"{key} must be a number") from e
    if positive and not value > 0:
        raise RuntimeError(f"{key} must be > 0")
    return value


def env_bool(key: str, default: bool) -> bool:
    raw = env(key, default="true" if default else "false").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    raise RuntimeError(f"{key} must be a boolean")


@dataclass(frozen=True)
class Settings:
    APP_ENV: str
    SERVICE_PORT: int
    INTERNAL_API_KEY: str
    S3_BUCKET: str
    S3_REGION: str
    S3_ENDPOINT: str
    S3_ACCESS_KEY_ID: str
    S3_SECRET_ACCESS_KEY: str
    STORAGE_DIR: str = "tmp/storage"
    CACHE_DIR: str = "tmp/cache"
    DEFAULT_PAGE_SIZE: str = "A4"
    CANVAS_SCALE: float = 1.0
    REDIS_URL: str = ""
    QUEUE_INSTANCE: str = ""
    ENABLE_WORKERS: bool = True
    WORKER_COUNT: int = 2
    PAGE_CONCURRENCY: int = 4
    MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_SECONDS: float = 2.0
    POLL_INTERVAL_SECONDS: float = 1.0
    RENDER_BACKEND: str = "auto"
    RENDERER_BINARY: str = "inkscape"
    RENDERER_TIMEOUT_SECONDS: float = 30.0
    REPROBE_SECONDS: float = 300.0
    RETENTION_SECONDS: float = 86400.0
    STALE_LOCK_SECONDS: float = 600.0
    CLEANUP_INTERVAL_SECONDS: float = 60.0


def load_settings() -> Settings:
    app_env = env("APP_ENV", default="development", required=False)
    service_port_raw = env("PORT", default=None, required=False) or env("SERVICE_PORT", default="9000", required=False)
    try:
        service_port = int(service_port_raw)
    except ValueError as e:
        raise RuntimeError("SERVICE_PORT must be an integer") from e

    internal_api_key = env("INTERNAL_API_KEY", required=True)

    s3_bucket = env("S3_BUCKET", default="", required=False)
    render_backend = env("RENDER_BACKEND", default="auto").strip().lower()
    if render_backend not in {"auto", "native", "external"}:
        raise RuntimeError("RENDER_BACKEND must be one of auto, native, external")

    return Settings(
        APP_ENV=app_env,
        SERVICE_PORT=service_port,
        INTERNAL_API_KEY=internal_api_key,
        S3_BUCKET=s3_bucket,
        # Credentials are only required once a bucket is configured.
        S3_REGION=env("S3_REGION", required=bool(s3_bucket)),
        S3_ENDPOINT=env("S3_ENDPOINT", default="", required=False),
        S3_ACCESS_KEY_ID=env("S3_ACCESS_KEY_ID", required=bool(s3_bucket)),
        S3_SECRET_ACCESS_KEY=env("S3_SECRET_ACCESS_KEY", required=bool(s3_bucket)),
        STORAGE_DIR=env("STORAGE_DIR", default="tmp/storage"),
        CACHE_DIR=env("CACHE_DIR", default="tmp/cache"),
        DEFAULT_PAGE_SIZE=env("DEFAULT_PAGE_SIZE", default="A4").strip().upper(),
        CANVAS_SCALE=env_float("CANVAS_SCALE", 1.0, positive=True),
        REDIS_URL=env("REDIS_URL", default=""),
        QUEUE_INSTANCE=env("QUEUE_INSTANCE", default=socket.gethostname()),
        ENABLE_WORKERS=env_bool("ENABLE_WORKERS", True),
        WORKER_COUNT=env_int("WORKER_COUNT", 2, minimum=1),
        PAGE_CONCURRENCY=env_int("PAGE_CONCURRENCY", 4, minimum=1),
        MAX_ATTEMPTS=env_int("MAX_ATTEMPTS", 3, minimum=1),
        RETRY_BACKOFF_SECONDS=env_float("RETRY_BACKOFF_SECONDS", 2.0),
        POLL_INTERVAL_SECONDS=env_float("POLL_INTERVAL_SECONDS", 1.0, positive=True),
        RENDER_BACKEND=render_backend,
        RENDERER_BINARY=env("RENDERER_BINARY", default="inkscape"),
        RENDERER_TIMEOUT_SECONDS=env_float("RENDERER_TIMEOUT_SECONDS", 30.0, positive=True),
        REPROBE_SECONDS=env_float("REPROBE_SECONDS", 300.0, positive=True),
        RETENTION_SECONDS=env_float("RETENTION_SECONDS", 86400.0, positive=True),
        STALE_LOCK_SECONDS=env_float("STALE_LOCK_SECONDS", 600.0, positive=True),
        CLEANUP_INTERVAL_SECONDS=env_float("CLEANUP_INTERVAL_SECONDS", 60.0, positive=True),
    )
