from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.botconsole.models import Base
from app.botconsole.utils import iso


class SessionMessage(Base):
    """A message seen on a robot conversation: inbound from a user, or the bot's reply."""

    __tablename__ = "session_messages"
    __table_args__ = (
        Index("idx_session_messages_session_id", "session_id"),
        Index("idx_session_messages_robot_id", "robot_id"),
        Index("idx_session_messages_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[str] = mapped_column(String(255), nullable=False)
    robot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    group_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    group_remark: Mapped[str | None] = mapped_column(String(255), nullable=True)
    room_type: Mapped[int | None] = mapped_column(Integer, nullable=True)
    text_type: Mapped[int | None] = mapped_column(Integer, nullable=True)
    at_me: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_from_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reply_to_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)  # client timestamp
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "robot_id": self.robot_id,
            "message_id": self.message_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "group_name": self.group_name,
            "group_remark": self.group_remark,
            "room_type": self.room_type,
            "text_type": self.text_type,
            "at_me": self.at_me,
            "content": self.content,
            "is_from_user": self.is_from_user,
            "reply_to_message_id": self.reply_to_message_id,
            "sent_at": iso(self.sent_at),
            "created_at": iso(self.created_at),
        }
