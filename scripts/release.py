"""
Release-phase helper.

- Fail fast if DATABASE_URL is missing (avoid silently using SQLite in prod).
- Upgrade the schema to alembic head and confirm every table the app
  checks at startup is present.
- Seed the bootstrap admin (idempotent; does NOT overwrite existing passwords).

Usage:
  python scripts/release.py [--skip-seed]
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _require_env(name: str) -> str:
    v = (os.environ.get(name) or "").strip()
    if not v:
        raise RuntimeError(f"Missing required environment variable {name}.")
    return v


def _alembic_config(db_url: str):
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def _missing_tables(db_url: str) -> list[str]:
    from app.rdms import REQUIRED_TABLES
    from app.rdms.db import missing_tables
    from scripts._db_utils import create_script_engine

    engine = create_script_engine(db_url)
    try:
        return missing_tables(engine, REQUIRED_TABLES)
    finally:
        engine.dispose()


def run_release(*, seed: bool = True) -> None:
    db_url = _require_env("DATABASE_URL")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")

    print("=== RDMS release start ===", flush=True)
    print(f"ENV={env or '(unset)'}", flush=True)

    from alembic import command

    print("Upgrading schema to head...", flush=True)
    command.upgrade(_alembic_config(db_url), "head")

    missing = _missing_tables(db_url)
    if missing:
        raise RuntimeError(f"Schema still incomplete after migration; missing tables: {', '.join(missing)}")
    print("Schema up to date.", flush=True)

    if seed:
        from scripts import init_db

        print("Seeding admin (idempotent)...", flush=True)
        init_db.seed_only(database_url=db_url)
    else:
        print("Seed skipped.", flush=True)
    print("=== RDMS release done ===", flush=True)


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    run_release(seed="--skip-seed" not in args)


if __name__ == "__main__":
    main()
