#!/usr/bin/env python3
"""
Container entrypoint.

1. Runs migrations + seed (release.py)
2. Replaces this process with gunicorn serving app.wsgi:app

Usage:
    python scripts/start.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

DEFAULT_PORT = "8080"


def resolve_port(raw: str | None) -> int:
    port = (raw or "").strip() or DEFAULT_PORT
    value = int(port)
    if value < 1 or value > 65535:
        raise ValueError(f"Port out of range: {value}")
    return value


def gunicorn_argv(port: int, workers: int) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", "60",
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    try:
        port = resolve_port(os.environ.get("PORT"))
    except ValueError:
        print(f"ERROR: Invalid PORT value '{os.environ.get('PORT')}'. Must be integer 1-65535.", flush=True)
        sys.exit(1)
    workers = int((os.environ.get("WEB_CONCURRENCY") or "2").strip() or 2)

    print("=== Running release phase ===", flush=True)
    from scripts.release import run_release

    try:
        run_release()
    except Exception as e:
        print(f"Release failed: {e}", flush=True)
        sys.exit(1)

    print(f"=== Starting gunicorn on 0.0.0.0:{port} ({workers} workers) ===", flush=True)
    os.execvp("gunicorn", gunicorn_argv(port, workers))


if __name__ == "__main__":
    main()
