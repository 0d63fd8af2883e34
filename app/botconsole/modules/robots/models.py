from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.botconsole.models import Base, JSONType
from app.botconsole.utils import iso


class RobotGroup(Base):
    __tablename__ = "robot_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str | None] = mapped_column(String(32), nullable=True)  # e.g. "#3b82f6"
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    robots: Mapped[list["Robot"]] = relationship("Robot", back_populates="group", lazy="selectin")

    def to_dict(self, with_counts: bool = False) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "priority": self.priority,
            "is_enabled": self.is_enabled,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if with_counts:
            data["robot_count"] = len(self.robots)
        return data


class RobotRole(Base):
    __tablename__ = "robot_roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    permissions: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=dict)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    robots: Mapped[list["Robot"]] = relationship("Robot", back_populates="role", lazy="selectin")

    def to_dict(self, with_counts: bool = False) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "permissions": self.permissions or {},
            "is_system": self.is_system,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if with_counts:
            data["robot_count"] = len(self.robots)
        return data


class Robot(Base):
    __tablename__ = "robots"
    __table_args__ = (
        Index("idx_robots_status", "status"),
        Index("idx_robots_is_active", "is_active"),
        Index("idx_robots_group_id", "group_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # WorkTool robot id (business key used by every other table)
    robot_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    api_base_url: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # online, offline, unknown, error
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="unknown")
    last_check_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Reported by WorkTool robotInfo/get
    nickname: Mapped[str | None] = mapped_column(String(255), nullable=True)
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_valid: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    message_callback_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    extra_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    group_id: Mapped[int | None] = mapped_column(ForeignKey("robot_groups.id", ondelete="SET NULL"), nullable=True)
    role_id: Mapped[int | None] = mapped_column(ForeignKey("robot_roles.id", ondelete="SET NULL"), nullable=True)
    capabilities: Mapped[list | None] = mapped_column(JSONType, nullable=True, default=list)
    load_balancing_weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)

    # sha256 hex of the callback API key; plaintext is never stored
    api_key_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    api_key_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    group: Mapped[RobotGroup | None] = relationship("RobotGroup", back_populates="robots", lazy="selectin")
    role: Mapped[RobotRole | None] = relationship("RobotRole", back_populates="robots", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "robot_id": self.robot_id,
            "name": self.name,
            "api_base_url": self.api_base_url,
            "description": self.description,
            "is_active": self.is_active,
            "status": self.status,
            "last_check_at": iso(self.last_check_at),
            "last_error": self.last_error,
            "nickname": self.nickname,
            "company": self.company,
            "ip_address": self.ip_address,
            "is_valid": self.is_valid,
            "activated_at": iso(self.activated_at),
            "expires_at": iso(self.expires_at),
            "message_callback_enabled": self.message_callback_enabled,
            "extra_data": self.extra_data,
            "group_id": self.group_id,
            "group_name": self.group.name if self.group else None,
            "role_id": self.role_id,
            "role_name": self.role.name if self.role else None,
            "capabilities": list(self.capabilities or []),
            "load_balancing_weight": self.load_balancing_weight,
            "has_api_key": bool(self.api_key_hash),
            "api_key_generated_at": iso(self.api_key_generated_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
