"""
Release phase for the bot console.

Steps:
1. Refuse to run without DATABASE_URL, or on SQLite / default secrets in production.
2. alembic upgrade head.
3. Confirm every console table exists after the upgrade.
4. Seed permissions, roles and the admin user (never overwrites an existing password).
5. Backfill the load-balancing row for robots created before it existed.

Usage:
  python scripts/release.py
  python scripts/release.py --skip-seed
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

DEFAULT_SECRETS = ("SECRET_KEY", "ADMIN_PASSWORD")


def _require_env(name: str) -> str:
    v = (os.environ.get(name) or "").strip()
    if not v:
        raise RuntimeError(f"Missing required environment variable {name}.")
    return v


def _production_guardrails(env: str, db_url: str) -> None:
    if env not in ("prod", "production"):
        return
    if db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")
    weak = [name for name in DEFAULT_SECRETS if (os.environ.get(name) or "change-me").strip() == "change-me"]
    if weak:
        raise RuntimeError(f"Refusing to release to production with default values for: {', '.join(weak)}")


def _upgrade(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def _missing_tables(db_url: str) -> list[str]:
    from sqlalchemy import inspect

    from app.botconsole.db import build_engine
    from app.botconsole.models import Base

    engine = build_engine(db_url)
    try:
        present = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    return sorted(set(Base.metadata.tables) - present)


def _backfill_load_balancing(db_url: str) -> tuple[int, int]:
    """Returns (robots, rows created)."""
    from app.botconsole.modules.loadbalancing.models import RobotLoadBalancing
    from app.botconsole.modules.loadbalancing.service import ensure_row
    from app.botconsole.modules.robots.models import Robot
    from scripts._db_utils import script_session

    with script_session(db_url) as s:
        robot_ids = [rid for (rid,) in s.query(Robot.robot_id).all()]
        have = {rid for (rid,) in s.query(RobotLoadBalancing.robot_id).all()}
        created = 0
        for rid in robot_ids:
            if rid not in have:
                ensure_row(s, rid)
                created += 1
    return len(robot_ids), created


def run_release(*, seed: bool = True) -> None:
    db_url = _require_env("DATABASE_URL")
    env = (os.environ.get("ENV") or "").strip().lower()
    _production_guardrails(env, db_url)

    print("=== Bot console release start ===", flush=True)
    print(f"ENV={env or '(unset)'}", flush=True)

    print("Running Alembic migrations...", flush=True)
    _upgrade(db_url)
    missing = _missing_tables(db_url)
    if missing:
        raise RuntimeError(f"Schema incomplete after upgrade; missing tables: {', '.join(missing)}")
    print("Migrations complete.", flush=True)

    if seed:
        print("Seeding permissions/admin (idempotent)...", flush=True)
        from scripts import init_db

        init_db.seed_only(database_url=db_url)
        print("Seed complete.", flush=True)

    robots, created = _backfill_load_balancing(db_url)
    print(f"Load balancing: {robots} robot(s), {created} row(s) backfilled.", flush=True)
    print("=== Bot console release done ===", flush=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Migrate and seed the bot console database")
    parser.add_argument("--skip-seed", action="store_true", help="Run migrations only")
    args = parser.parse_args()

    from dotenv import load_dotenv

    load_dotenv()
    run_release(seed=not args.skip_seed)


if __name__ == "__main__":
    main()
