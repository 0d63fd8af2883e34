from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.botconsole.models import Base, JSONType
from app.botconsole.utils import iso


class RobotCommand(Base):
    __tablename__ = "robot_commands"
    __table_args__ = (
        Index("idx_robot_commands_robot_id", "robot_id"),
        Index("idx_robot_commands_status", "status"),
        Index("idx_robot_commands_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    robot_id: Mapped[str] = mapped_column(ForeignKey("robots.robot_id", ondelete="CASCADE"), nullable=False)
    command_type: Mapped[str] = mapped_column(String(64), nullable=False)
    command_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)  # 1-10

    # pending, processing, completed, failed, cancelled
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    queue_entries: Mapped[list["RobotCommandQueue"]] = relationship(
        "RobotCommandQueue",
        back_populates="command",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "robot_id": self.robot_id,
            "command_type": self.command_type,
            "command_data": self.command_data,
            "priority": self.priority,
            "status": self.status,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "error_message": self.error_message,
            "result": self.result,
            "message_id": self.message_id,
            "sent_at": iso(self.sent_at),
            "executed_at": iso(self.executed_at),
            "completed_at": iso(self.completed_at),
            "created_by_user_id": self.created_by_user_id,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class RobotCommandQueue(Base):
    """Dispatch queue consumed by the command executor (one row per enqueue)."""

    __tablename__ = "robot_command_queue"
    __table_args__ = (
        Index("idx_robot_command_queue_status_priority", "status", "priority"),
        Index("idx_robot_command_queue_robot_id", "robot_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    command_id: Mapped[int] = mapped_column(ForeignKey("robot_commands.id", ondelete="CASCADE"), nullable=False)
    robot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    command: Mapped[RobotCommand] = relationship("RobotCommand", back_populates="queue_entries")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "command_id": self.command_id,
            "robot_id": self.robot_id,
            "priority": self.priority,
            "status": self.status,
            "scheduled_for": iso(self.scheduled_for),
            "locked_at": iso(self.locked_at),
            "locked_by": self.locked_by,
            "retry_count": self.retry_count,
        }
