from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.botconsole.models import Base, JSONType
from app.botconsole.utils import iso


class ApiCallLog(Base):
    """
    One row per WorkTool API call (outbound) or robot callback (inbound, api_type="callback").
    """

    __tablename__ = "api_call_logs"
    __table_args__ = (
        Index("idx_api_call_logs_robot_id", "robot_id"),
        Index("idx_api_call_logs_api_type", "api_type"),
        Index("idx_api_call_logs_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    robot_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    api_type: Mapped[str] = mapped_column(String(64), nullable=False)  # send_message, robot_info, callback, ...
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    method: Mapped[str] = mapped_column(String(10), nullable=False, default="GET")

    request_params: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    request_body: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    response_time: Mapped[int | None] = mapped_column(Integer, nullable=True)  # ms

    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "robot_id": self.robot_id,
            "api_type": self.api_type,
            "url": self.url,
            "method": self.method,
            "request_params": self.request_params,
            "request_body": self.request_body,
            "response_status": self.response_status,
            "response_data": self.response_data,
            "response_time": self.response_time,
            "success": self.success,
            "error_message": self.error_message,
            "created_at": iso(self.created_at),
        }
