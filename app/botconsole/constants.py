"""
Central constants for the bot console: enumerations and the permission catalogue.
"""
from __future__ import annotations

ROBOT_STATUSES = ("online", "offline", "unknown", "error")

COMMAND_TYPES = ("send_message", "send_group_message", "update_info", "get_info", "custom")
COMMAND_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
COMMAND_TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

QA_RECEIVER_TYPES = ("all", "user", "group")

ALERT_LEVELS = ("critical", "warning", "info")
ALERT_LEVEL_TEXT = {"critical": "严重", "warning": "警告", "info": "信息"}
ALERT_STATUSES = ("pending", "handled", "ignored")
NOTIFICATION_METHOD_TYPES = ("robot", "webhook", "log")

FLOW_TRIGGER_TYPES = (
    "user_message",
    "staff_message",
    "operation_message",
    "webhook_message",
    "group_message",
    "private_message",
    "scheduled",
    "manual",
)
FLOW_INSTANCE_STATUSES = ("running", "completed", "failed", "timeout", "cancelled")

AI_ACTIONS = ("replied", "skipped", "transferred", "none", "processing")
STAFF_ACTIONS = ("replied", "handled", "ignored", "none")
DECISION_PRIORITIES = ("high", "medium", "low")

# (key, display name); seeded by scripts/init_db.py and checked by require_permission.
PERMISSIONS: tuple[tuple[str, str], ...] = (
    ("admin.view", "Admin: dashboard"),
    ("users.manage", "Users: manage accounts"),
    ("audit.view", "Audit: view operation log"),
    ("settings.manage", "Settings: manage"),
    ("robots.view", "Robots: view"),
    ("robots.edit", "Robots: create/edit/delete"),
    ("robots.operate", "Robots: check status, sync, send messages"),
    ("commands.view", "Commands: view"),
    ("commands.send", "Commands: create/manage"),
    ("loadbalancing.view", "Load balancing: view/select"),
    ("loadbalancing.edit", "Load balancing: update metrics"),
    ("qa.view", "QA: view"),
    ("qa.edit", "QA: edit/import"),
    ("alerts.view", "Alerts: view"),
    ("alerts.edit", "Alerts: configure rules"),
    ("alerts.handle", "Alerts: handle/escalate"),
    ("flows.view", "Flows: view"),
    ("flows.edit", "Flows: edit"),
    ("ai.view", "AI: view monitoring"),
    ("ai.edit", "AI: manage providers/models"),
    ("ai.record", "AI: record usage/logs"),
    ("decisions.view", "Decisions: view"),
    ("decisions.record", "Decisions: record/update"),
    ("messages.view", "Messages: view history"),
)

# Operators get everything except account/settings management.
OPERATOR_EXCLUDED_PERMISSIONS = frozenset({"users.manage", "settings.manage", "audit.view"})
