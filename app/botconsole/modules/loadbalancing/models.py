from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.botconsole.models import Base
from app.botconsole.utils import iso


class RobotLoadBalancing(Base):
    """Live load/health metrics for one robot (one row per robot)."""

    __tablename__ = "robot_load_balancing"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    robot_id: Mapped[str] = mapped_column(
        ForeignKey("robots.robot_id", ondelete="CASCADE"), nullable=False, unique=True
    )

    current_sessions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_sessions: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    cpu_usage: Mapped[float | None] = mapped_column(Float, nullable=True)
    memory_usage: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_response_time: Mapped[float | None] = mapped_column(Float, nullable=True)  # ms
    success_rate: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)  # 0-100
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    health_score: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)  # 0-100
    load_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    performance_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        from app.botconsole.modules.loadbalancing.service import load_level, utilization_rate

        return {
            "id": self.id,
            "robot_id": self.robot_id,
            "current_sessions": self.current_sessions,
            "max_sessions": self.max_sessions,
            "cpu_usage": self.cpu_usage,
            "memory_usage": self.memory_usage,
            "avg_response_time": self.avg_response_time,
            "success_rate": self.success_rate,
            "error_count": self.error_count,
            "total_requests": self.total_requests,
            "health_score": self.health_score,
            "load_score": self.load_score,
            "performance_score": self.performance_score,
            "is_available": self.is_available,
            "utilization_rate": utilization_rate(self.current_sessions, self.max_sessions),
            "load_level": load_level(self.current_sessions, self.max_sessions),
            "last_updated_at": iso(self.last_updated_at),
        }
