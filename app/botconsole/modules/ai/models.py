from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.botconsole.models import Base, JSONType
from app.botconsole.utils import iso, mask_secret


class AIProvider(Base):
    __tablename__ = "ai_providers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    provider_name: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_type: Mapped[str | None] = mapped_column(String(64), nullable=True)  # openai, azure, doubao, ...
    api_endpoint: Mapped[str | None] = mapped_column(Text, nullable=True)
    api_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    rate_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)  # requests/min
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider_id": self.provider_id,
            "provider_name": self.provider_name,
            "provider_type": self.provider_type,
            "api_endpoint": self.api_endpoint,
            "api_key": mask_secret(self.api_key),
            "has_api_key": bool(self.api_key),
            "rate_limit": self.rate_limit,
            "is_active": self.is_active,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class AIModel(Base):
    __tablename__ = "ai_models"
    __table_args__ = (Index("idx_ai_models_provider_id", "provider_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    model_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    model_name: Mapped[str] = mapped_column(String(255), nullable=False)
    model_type: Mapped[str | None] = mapped_column(String(64), nullable=True)  # chat, embedding, ...
    provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    api_endpoint: Mapped[str | None] = mapped_column(Text, nullable=True)
    api_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    model_config: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    max_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    temperature: Mapped[float | None] = mapped_column(Float, nullable=True)
    input_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)  # per 1K tokens
    output_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)  # per 1K tokens
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "model_id": self.model_id,
            "model_name": self.model_name,
            "model_type": self.model_type,
            "provider_id": self.provider_id,
            "api_endpoint": self.api_endpoint,
            "api_key": mask_secret(self.api_key),
            "has_api_key": bool(self.api_key),
            "model_config": self.model_config or {},
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "input_price": self.input_price,
            "output_price": self.output_price,
            "is_active": self.is_active,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class AIModelUsage(Base):
    __tablename__ = "ai_model_usage"
    __table_args__ = (
        Index("idx_ai_model_usage_created_at", "created_at"),
        Index("idx_ai_model_usage_model_id", "model_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    model_id: Mapped[str] = mapped_column(String(128), nullable=False)
    provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    operation_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    input_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    output_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    response_time: Mapped[int | None] = mapped_column(Integer, nullable=True)  # ms
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="success")  # success, error
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "model_id": self.model_id,
            "provider_id": self.provider_id,
            "session_id": self.session_id,
            "operation_type": self.operation_type,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "input_cost": self.input_cost,
            "output_cost": self.output_cost,
            "total_cost": self.total_cost,
            "response_time": self.response_time,
            "status": self.status,
            "error_message": self.error_message,
            "metadata": self.extra_data,
            "created_at": iso(self.created_at),
        }


class AIIoLog(Base):
    __tablename__ = "ai_io_logs"
    __table_args__ = (
        Index("idx_ai_io_logs_session_id", "session_id"),
        Index("idx_ai_io_logs_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    robot_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    robot_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    operation_type: Mapped[str] = mapped_column(String(64), nullable=False)
    ai_input: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_output: Mapped[str | None] = mapped_column(Text, nullable=True)
    model_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    temperature: Mapped[float | None] = mapped_column(Float, nullable=True)
    request_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)  # ms
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="success")  # success, error
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "robot_id": self.robot_id,
            "robot_name": self.robot_name,
            "operation_type": self.operation_type,
            "ai_input": self.ai_input,
            "ai_output": self.ai_output,
            "model_id": self.model_id,
            "temperature": self.temperature,
            "request_duration": self.request_duration,
            "status": self.status,
            "error_message": self.error_message,
            "extra_data": self.extra_data,
            "created_at": iso(self.created_at),
        }
