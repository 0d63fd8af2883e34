from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.botconsole.models import Base
from app.botconsole.utils import iso, split_csv


class QAEntry(Base):
    __tablename__ = "qa_database"
    __table_args__ = (
        Index("idx_qa_database_keyword", "keyword"),
        Index("idx_qa_database_active_priority", "is_active", "priority"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    keyword: Mapped[str] = mapped_column(String(255), nullable=False)
    reply: Mapped[str] = mapped_column(Text, nullable=False)
    receiver_type: Mapped[str] = mapped_column(String(16), nullable=False, default="all")  # all, user, group
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)  # 1 = highest
    is_exact_match: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    related_keywords: Mapped[str | None] = mapped_column(Text, nullable=True)  # comma-separated
    group_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def keywords(self) -> list[str]:
        return [self.keyword] + split_csv(self.related_keywords)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "keyword": self.keyword,
            "reply": self.reply,
            "receiver_type": self.receiver_type,
            "priority": self.priority,
            "is_exact_match": self.is_exact_match,
            "related_keywords": self.related_keywords,
            "group_name": self.group_name,
            "is_active": self.is_active,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
