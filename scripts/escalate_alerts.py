#!/usr/bin/env python
"""
Run one alert escalation sweep (same as POST /api/admin/alerts/escalate).

Usage:
    python scripts/escalate_alerts.py

Environment:
    DATABASE_URL: database connection string
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from app.botconsole.audit import record_event
from app.botconsole.modules.alerts.service import escalate_due
from scripts._db_utils import resolve_db_url, script_session


def main() -> None:
    load_dotenv()
    logging.basicConfig(level="INFO")

    with script_session(resolve_db_url()) as s:
        result = escalate_due(s)
        record_event(
            s,
            actor=None,
            action="alert.escalate",
            entity_type="AlertHistory",
            metadata={"checked": result["checked"], "escalated": result["escalated_count"], "source": "script"},
        )

    for step in result["escalated"]:
        print(f"alert {step['alert_id']}: level {step['from_level']} -> {step['to_level']}")
    print(f"Checked {result['checked']} alert(s), escalated {result['escalated_count']}.")


if __name__ == "__main__":
    main()
