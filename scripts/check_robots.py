#!/usr/bin/env python
"""
Check every active robot against WorkTool and store online/offline status.

Meant for a cron/scheduler; each WorkTool call is written to api_call_logs.

Usage:
    python scripts/check_robots.py
    python scripts/check_robots.py --robot-id R123

Environment:
    DATABASE_URL: database connection string
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from app.botconsole.audit import record_event
from app.botconsole.models import Robot
from app.botconsole.modules.robots.service import check_all, check_status
from scripts._db_utils import resolve_db_url, script_session


def main() -> None:
    parser = argparse.ArgumentParser(description="Check WorkTool robot status")
    parser.add_argument("--robot-id", help="Only check this robot")
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(level="INFO")

    with script_session(resolve_db_url()) as s:
        if args.robot_id:
            robot = s.query(Robot).filter(Robot.robot_id == args.robot_id).one_or_none()
            if robot is None:
                print(f"Robot not found: {args.robot_id}")
                sys.exit(1)
            result = {"checked": 1, "results": [check_status(s, robot)]}
        else:
            result = check_all(s)
        record_event(
            s,
            actor=None,
            action="robot.check_all",
            entity_type="Robot",
            metadata={"checked": result["checked"], "source": "script"},
        )

    for r in result["results"]:
        print(f"{r['robot_id']}: {r['status']}" + (f" ({r['error']})" if r.get("error") else ""))
    print(f"Checked {result['checked']} robot(s).")


if __name__ == "__main__":
    main()
