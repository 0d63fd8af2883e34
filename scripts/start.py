#!/usr/bin/env python3
"""
Container entry point for the bot console.

1. Runs the release phase (migrations, seed, load-balancing backfill) unless SKIP_RELEASE=1.
2. Execs gunicorn on app.wsgi:app.

The worker timeout must outlast one WorkTool call with its retries, so it defaults to
max(60, WORKTOOL_TIMEOUT_SECONDS * 4); GUNICORN_TIMEOUT overrides it.

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


def _int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"ERROR: {name} must be an integer, got '{raw}'.", flush=True)
        sys.exit(1)


def main() -> None:
    from dotenv import load_dotenv

    load_dotenv()

    port = _int_env("PORT", 8080)
    if not 1 <= port <= 65535:
        print(f"ERROR: Invalid PORT value '{port}'. Must be integer 1-65535.", flush=True)
        sys.exit(1)

    if (os.environ.get("SKIP_RELEASE") or "").strip().lower() in ("1", "true", "yes"):
        print("SKIP_RELEASE set; not running migrations.", flush=True)
    else:
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    workers = str(max(1, _int_env("WEB_CONCURRENCY", 2)))
    timeout = str(_int_env("GUNICORN_TIMEOUT", max(60, _int_env("WORKTOOL_TIMEOUT_SECONDS", 10) * 4)))
    print(f"=== Starting gunicorn on 0.0.0.0:{port} ({workers} workers, timeout {timeout}s) ===", flush=True)

    os.execvp(
        "gunicorn",
        [
            "gunicorn",
            "app.wsgi:app",
            "--bind", f"0.0.0.0:{port}",
            "--workers", workers,
            "--timeout", timeout,
            "--preload",
            "--access-logfile", "-",
            "--error-logfile", "-",
        ],
    )


if __name__ == "__main__":
    main()
