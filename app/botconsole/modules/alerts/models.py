from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.botconsole.models import Base, JSONType
from app.botconsole.utils import iso


class AlertGroup(Base):
    __tablename__ = "alert_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    group_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    group_color: Mapped[str | None] = mapped_column(String(32), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "group_name": self.group_name,
            "group_code": self.group_code,
            "group_color": self.group_color,
            "description": self.description,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class AlertRule(Base):
    __tablename__ = "alert_rules"
    __table_args__ = (Index("idx_alert_rules_intent_type", "intent_type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    intent_type: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    alert_level: Mapped[str] = mapped_column(String(16), nullable=False, default="warning")  # critical, warning, info
    threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    cooldown_period: Mapped[int] = mapped_column(Integer, nullable=False, default=300)  # seconds
    message_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    keywords: Mapped[str | None] = mapped_column(Text, nullable=True)  # comma-separated
    group_id: Mapped[int | None] = mapped_column(ForeignKey("alert_groups.id", ondelete="SET NULL"), nullable=True)

    enable_escalation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalation_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    escalation_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=1800)  # seconds
    escalation_config: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    group: Mapped[AlertGroup | None] = relationship("AlertGroup", lazy="selectin")
    notification_methods: Mapped[list["NotificationMethod"]] = relationship(
        "NotificationMethod",
        back_populates="rule",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="NotificationMethod.priority",
    )

    def to_dict(self, with_methods: bool = False) -> dict:
        data = {
            "id": self.id,
            "intent_type": self.intent_type,
            "rule_name": self.rule_name,
            "is_enabled": self.is_enabled,
            "alert_level": self.alert_level,
            "threshold": self.threshold,
            "cooldown_period": self.cooldown_period,
            "message_template": self.message_template,
            "keywords": self.keywords,
            "group_id": self.group_id,
            "group_name": self.group.group_name if self.group else None,
            "enable_escalation": self.enable_escalation,
            "escalation_threshold": self.escalation_threshold,
            "escalation_interval": self.escalation_interval,
            "escalation_config": self.escalation_config,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if with_methods:
            data["notification_methods"] = [m.to_dict() for m in self.notification_methods]
        return data


class NotificationMethod(Base):
    __tablename__ = "notification_methods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    alert_rule_id: Mapped[int] = mapped_column(ForeignKey("alert_rules.id", ondelete="CASCADE"), nullable=False)
    method_type: Mapped[str] = mapped_column(String(32), nullable=False)  # robot, webhook, log
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    recipient_config: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    message_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    rule: Mapped[AlertRule] = relationship("AlertRule", back_populates="notification_methods")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "alert_rule_id": self.alert_rule_id,
            "method_type": self.method_type,
            "is_enabled": self.is_enabled,
            "recipient_config": self.recipient_config or {},
            "message_template": self.message_template,
            "priority": self.priority,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class AlertHistory(Base):
    __tablename__ = "alert_history"
    __table_args__ = (
        Index("idx_alert_history_created_at", "created_at"),
        Index("idx_alert_history_status", "status"),
        Index("idx_alert_history_robot_id", "robot_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rule_id: Mapped[int | None] = mapped_column(ForeignKey("alert_rules.id", ondelete="SET NULL"), nullable=True)
    intent_type: Mapped[str] = mapped_column(String(64), nullable=False)
    alert_level: Mapped[str] = mapped_column(String(16), nullable=False)
    group_id: Mapped[int | None] = mapped_column(ForeignKey("alert_groups.id", ondelete="SET NULL"), nullable=True)

    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    group_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    robot_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    message_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    alert_message: Mapped[str] = mapped_column(Text, nullable=False)

    notification_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending, sent, failed
    notification_result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending, handled, ignored

    is_handled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    handled_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    handled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    handled_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalation_history: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    last_escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    rule: Mapped[AlertRule | None] = relationship("AlertRule", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "rule_id": self.rule_id,
            "rule_name": self.rule.rule_name if self.rule else None,
            "intent_type": self.intent_type,
            "alert_level": self.alert_level,
            "group_id": self.group_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "group_name": self.group_name,
            "robot_id": self.robot_id,
            "message_content": self.message_content,
            "alert_message": self.alert_message,
            "notification_status": self.notification_status,
            "notification_result": self.notification_result,
            "status": self.status,
            "is_handled": self.is_handled,
            "handled_by": self.handled_by,
            "handled_at": iso(self.handled_at),
            "handled_note": self.handled_note,
            "escalation_level": self.escalation_level,
            "escalation_history": list(self.escalation_history or []),
            "last_escalated_at": iso(self.last_escalated_at),
            "created_at": iso(self.created_at),
        }


class AlertDedupRecord(Base):
    """Cooldown bookkeeping: one row per (rule, robot, user, session) hash."""

    __tablename__ = "alert_dedup_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    dedup_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # sha256 hex
    rule_id: Mapped[int | None] = mapped_column(ForeignKey("alert_rules.id", ondelete="CASCADE"), nullable=True)
    first_alert_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_alert_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    trigger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    suppressed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_trigger_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class AlertBatchOperation(Base):
    __tablename__ = "alert_batch_operations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation_type: Mapped[str] = mapped_column(String(32), nullable=False)  # handle, ignore
    alert_ids: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    total_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    operated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation_type": self.operation_type,
            "alert_ids": list(self.alert_ids or []),
            "total_count": self.total_count,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "note": self.note,
            "operated_by_user_id": self.operated_by_user_id,
            "created_at": iso(self.created_at),
        }
