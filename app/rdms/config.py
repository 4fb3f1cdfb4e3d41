"""
Environment-driven settings.

`load_dotenv()` runs in create_app() before these are read, so a local .env
file works for development. Production refuses to start on unsafe defaults.
"""
import os
from dataclasses import dataclass

DEFAULT_SECRET_KEY = "change-me"
DEFAULT_DATABASE_URL = "sqlite:///rdms.db"


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    storage_backend: str
    local_storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    # QC documents and review workflow
    iso_docs_prefix: str
    default_review_note: str
    request_chain_max_hops: int

    @property
    def is_production(self) -> bool:
        return self.env.lower() in ("prod", "production")


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = _env(name)
    try:
        value = int(raw) if raw else default
    except ValueError:
        return default
    return value if value >= minimum else default


def load_settings() -> Settings:
    return Settings(
        secret_key=_env("SECRET_KEY", DEFAULT_SECRET_KEY),
        env=_env("ENV", "development"),
        database_url=_env("DATABASE_URL", DEFAULT_DATABASE_URL),
        storage_backend=_env("STORAGE_BACKEND", "local").lower(),
        local_storage_root=_env("LOCAL_STORAGE_ROOT"),
        s3_endpoint=_env("S3_ENDPOINT"),
        s3_region=_env("S3_REGION", "nyc3"),
        s3_bucket=_env("S3_BUCKET"),
        s3_access_key_id=_env("S3_ACCESS_KEY_ID"),
        s3_secret_access_key=_env("S3_SECRET_ACCESS_KEY"),
        iso_docs_prefix=_env("ISO_DOCS_PREFIX", "iso-docs").strip("/") or "iso-docs",
        default_review_note=_env("DEFAULT_REVIEW_NOTE", "Approved"),
        request_chain_max_hops=_env_int("REQUEST_CHAIN_MAX_HOPS", 50),
    )


def check_production(s: Settings) -> None:
    """Fail fast on settings that are only acceptable in development."""
    if not s.is_production:
        return
    if s.database_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if s.secret_key in ("", DEFAULT_SECRET_KEY):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")


def load_config() -> dict:
    s = load_settings()
    check_production(s)
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "LOCAL_STORAGE_ROOT": s.local_storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "ISO_DOCS_PREFIX": s.iso_docs_prefix,
        "DEFAULT_REVIEW_NOTE": s.default_review_note,
        "REQUEST_CHAIN_MAX_HOPS": s.request_chain_max_hops,
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": s.is_production,
        # JSON bodies only; attachments are references, not uploads
        "MAX_CONTENT_LENGTH": 5 * 1024 * 1024,
    }
