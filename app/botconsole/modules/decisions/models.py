from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.botconsole.models import Base, JSONType
from app.botconsole.utils import iso


class CollaborationDecisionLog(Base):
    __tablename__ = "collaboration_decision_logs"
    __table_args__ = (
        Index("idx_collab_decisions_session_id", "session_id"),
        Index("idx_collab_decisions_message_id", "message_id"),
        Index("idx_collab_decisions_robot_id", "robot_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[str] = mapped_column(String(255), nullable=False)
    message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    robot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    should_ai_reply: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    ai_action: Mapped[str] = mapped_column(String(16), nullable=False, default="none")
    staff_action: Mapped[str] = mapped_column(String(16), nullable=False, default="none")
    priority: Mapped[str] = mapped_column(String(8), nullable=False, default="medium")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    staff_context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    info_context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    strategy: Mapped[str | None] = mapped_column(String(64), nullable=True)
    staff_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    message_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "robot_id": self.robot_id,
            "should_ai_reply": self.should_ai_reply,
            "ai_action": self.ai_action,
            "staff_action": self.staff_action,
            "priority": self.priority,
            "reason": self.reason,
            "staff_context": self.staff_context,
            "info_context": self.info_context,
            "strategy": self.strategy,
            "staff_type": self.staff_type,
            "message_type": self.message_type,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
