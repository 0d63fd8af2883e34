from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.botconsole.models import Base, JSONType
from app.botconsole.utils import iso

DEFAULT_RETRY_CONFIG = {"maxRetries": 3, "retryInterval": 1000}


class FlowDefinition(Base):
    __tablename__ = "flow_definitions"
    __table_args__ = (Index("idx_flow_definitions_trigger_type", "trigger_type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[str] = mapped_column(String(16), nullable=False, default="1.0")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    trigger_type: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger_config: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    nodes: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    edges: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    variables: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    timeout: Mapped[int] = mapped_column(Integer, nullable=False, default=30000)  # ms
    retry_config: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    instances: Mapped[list["FlowInstance"]] = relationship("FlowInstance", back_populates="flow_definition")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "is_active": self.is_active,
            "status": "active" if self.is_active else "inactive",
            "trigger_type": self.trigger_type,
            "trigger_config": self.trigger_config or {},
            "nodes": list(self.nodes or []),
            "edges": list(self.edges or []),
            "variables": self.variables or {},
            "timeout": self.timeout,
            "retry_config": self.retry_config or dict(DEFAULT_RETRY_CONFIG),
            "is_default": self.is_default,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class FlowInstance(Base):
    __tablename__ = "flow_instances"
    __table_args__ = (
        Index("idx_flow_instances_definition", "flow_definition_id"),
        Index("idx_flow_instances_status", "status"),
        Index("idx_flow_instances_started_at", "started_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    flow_definition_id: Mapped[int | None] = mapped_column(
        ForeignKey("flow_definitions.id", ondelete="SET NULL"), nullable=True
    )
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    robot_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    current_node_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_time: Mapped[int | None] = mapped_column(Integer, nullable=True)  # ms
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    flow_definition: Mapped[FlowDefinition | None] = relationship("FlowDefinition", back_populates="instances")
    logs: Mapped[list["FlowExecutionLog"]] = relationship(
        "FlowExecutionLog",
        back_populates="instance",
        cascade="all, delete-orphan",
        order_by="FlowExecutionLog.started_at",
    )

    def to_dict(self, with_logs: bool = False) -> dict:
        data = {
            "id": self.id,
            "flow_definition_id": self.flow_definition_id,
            "flow_name": self.flow_definition.name if self.flow_definition else None,
            "session_id": self.session_id,
            "robot_id": self.robot_id,
            "status": self.status,
            "current_node_id": self.current_node_id,
            "context": self.context or {},
            "error_message": self.error_message,
            "processing_time": self.processing_time,
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
        }
        if with_logs:
            data["logs"] = [log.to_dict() for log in self.logs]
        return data


class FlowExecutionLog(Base):
    __tablename__ = "flow_execution_logs"
    __table_args__ = (Index("idx_flow_execution_logs_instance", "instance_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    instance_id: Mapped[int] = mapped_column(ForeignKey("flow_instances.id", ondelete="CASCADE"), nullable=False)
    node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    node_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # success, failed, skipped, running
    input_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    output_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)  # ms
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    instance: Mapped[FlowInstance] = relationship("FlowInstance", back_populates="logs")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "status": self.status,
            "input_data": self.input_data,
            "output_data": self.output_data,
            "error_message": self.error_message,
            "duration": self.duration,
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
        }
