#!/usr/bin/env python3
"""
Production startup: release (migrate + seed), then exec gunicorn on app.wsgi:app.

Environment:
    PORT               listen port (default 8080)
    WEB_CONCURRENCY    gunicorn workers (default 2)
    GUNICORN_TIMEOUT   worker timeout in seconds (default 60)
    SKIP_RELEASE=1     start without migrating (schema check still guards requests)
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _int_env(name: str, default: int, *, lo: int, hi: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = -1
    if value < lo or value > hi:
        print(f"ERROR: Invalid {name} value '{raw}'. Must be integer {lo}-{hi}.", flush=True)
        sys.exit(1)
    return value


def gunicorn_argv() -> list[str]:
    port = _int_env("PORT", 8080, lo=1, hi=65535)
    workers = _int_env("WEB_CONCURRENCY", 2, lo=1, hi=64)
    timeout = _int_env("GUNICORN_TIMEOUT", 60, lo=1, hi=3600)
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", str(timeout),
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    argv = gunicorn_argv()

    if (os.environ.get("SKIP_RELEASE") or "").strip() == "1":
        print("=== Release skipped (SKIP_RELEASE=1) ===", flush=True)
    else:
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    print(f"=== Starting gunicorn: {' '.join(argv[1:])} ===", flush=True)
    # exec so gunicorn becomes PID 1 and receives signals directly
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
