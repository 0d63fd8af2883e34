"""initial bot console schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _ts(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(), nullable=True)
    return sa.Column(name, sa.DateTime(), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    """Create every console table (skips tables that already exist)."""
    conn = op.get_bind()
    existing_tables = set(sa.inspect(conn).get_table_names())

    def create(name: str, *columns, indexes: Sequence[tuple[str, list[str]]] = ()) -> None:
        if name in existing_tables:
            return
        op.create_table(name, *columns)
        for index_name, cols in indexes:
            op.create_index(index_name, name, cols)

    # ---------- Core ----------
    create(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(64), nullable=False, unique=True),
        sa.Column("email", sa.String(255), nullable=True, unique=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("last_login_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at", nullable=True),
    )
    create(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(128), nullable=False),
        _ts("created_at"),
    )
    create(
        "permissions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(128), nullable=False, unique=True),
        sa.Column("name", sa.String(128), nullable=False),
        _ts("created_at"),
    )
    create(
        "user_roles",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    )
    create(
        "role_permissions",
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
    )
    create(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        _ts("created_at"),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("client_ip", sa.String(45), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("actor_username", sa.String(64), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.String(512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        indexes=[
            ("idx_audit_events_action", ["action"]),
            ("idx_audit_events_created_at", ["created_at"]),
        ],
    )
    create(
        "system_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(128), nullable=False, unique=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        _ts("updated_at"),
        sa.Column("updated_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        indexes=[("idx_system_settings_category", ["category"])],
    )

    # ---------- Robots ----------
    create(
        "robot_groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("color", sa.String(32), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
    )
    create(
        "robot_roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("permissions", JSON_TYPE, nullable=True),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
        _ts("updated_at"),
    )
    create(
        "robots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("robot_id", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("api_base_url", sa.String(512), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("status", sa.String(32), nullable=False, server_default="unknown"),
        _ts("last_check_at", nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("nickname", sa.String(255), nullable=True),
        sa.Column("company", sa.String(255), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("is_valid", sa.Boolean(), nullable=True),
        _ts("activated_at", nullable=True),
        _ts("expires_at", nullable=True),
        sa.Column("message_callback_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("extra_data", JSON_TYPE, nullable=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("robot_groups.id", ondelete="SET NULL"), nullable=True),
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("robot_roles.id", ondelete="SET NULL"), nullable=True),
        sa.Column("capabilities", JSON_TYPE, nullable=True),
        sa.Column("load_balancing_weight", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("api_key_hash", sa.String(64), nullable=True),
        _ts("api_key_generated_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        indexes=[
            ("idx_robots_status", ["status"]),
            ("idx_robots_is_active", ["is_active"]),
            ("idx_robots_group_id", ["group_id"]),
        ],
    )
    create(
        "robot_load_balancing",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "robot_id", sa.String(64), sa.ForeignKey("robots.robot_id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("current_sessions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_sessions", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("cpu_usage", sa.Float(), nullable=True),
        sa.Column("memory_usage", sa.Float(), nullable=True),
        sa.Column("avg_response_time", sa.Float(), nullable=True),
        sa.Column("success_rate", sa.Float(), nullable=False, server_default="100"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_requests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("health_score", sa.Float(), nullable=False, server_default="100"),
        sa.Column("load_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("performance_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("last_updated_at"),
        _ts("created_at"),
    )
    create(
        "robot_commands",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("robot_id", sa.String(64), sa.ForeignKey("robots.robot_id", ondelete="CASCADE"), nullable=False),
        sa.Column("command_type", sa.String(64), nullable=False),
        sa.Column("command_data", JSON_TYPE, nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("result", JSON_TYPE, nullable=True),
        sa.Column("message_id", sa.String(128), nullable=True),
        _ts("sent_at", nullable=True),
        _ts("executed_at", nullable=True),
        _ts("completed_at", nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        indexes=[
            ("idx_robot_commands_robot_id", ["robot_id"]),
            ("idx_robot_commands_status", ["status"]),
            ("idx_robot_commands_created_at", ["created_at"]),
        ],
    )
    create(
        "robot_command_queue",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("command_id", sa.Integer(), sa.ForeignKey("robot_commands.id", ondelete="CASCADE"), nullable=False),
        sa.Column("robot_id", sa.String(64), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        _ts("scheduled_for"),
        _ts("locked_at", nullable=True),
        sa.Column("locked_by", sa.String(128), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at"),
        indexes=[
            ("idx_robot_command_queue_status_priority", ["status", "priority"]),
            ("idx_robot_command_queue_robot_id", ["robot_id"]),
        ],
    )
    create(
        "api_call_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("robot_id", sa.String(64), nullable=True),
        sa.Column("api_type", sa.String(64), nullable=False),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("method", sa.String(10), nullable=False, server_default="GET"),
        sa.Column("request_params", JSON_TYPE, nullable=True),
        sa.Column("request_body", JSON_TYPE, nullable=True),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("response_data", JSON_TYPE, nullable=True),
        sa.Column("response_time", sa.Integer(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.Text(), nullable=True),
        _ts("created_at"),
        indexes=[
            ("idx_api_call_logs_robot_id", ["robot_id"]),
            ("idx_api_call_logs_api_type", ["api_type"]),
            ("idx_api_call_logs_created_at", ["created_at"]),
        ],
    )

    # ---------- QA ----------
    create(
        "qa_database",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("keyword", sa.String(255), nullable=False),
        sa.Column("reply", sa.Text(), nullable=False),
        sa.Column("receiver_type", sa.String(16), nullable=False, server_default="all"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("is_exact_match", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("related_keywords", sa.Text(), nullable=True),
        sa.Column("group_name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
        indexes=[
            ("idx_qa_database_keyword", ["keyword"]),
            ("idx_qa_database_active_priority", ["is_active", "priority"]),
        ],
    )

    # ---------- Alerts ----------
    create(
        "alert_groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_name", sa.String(128), nullable=False, unique=True),
        sa.Column("group_code", sa.String(64), nullable=False, unique=True),
        sa.Column("group_color", sa.String(32), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
    )
    create(
        "alert_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("intent_type", sa.String(64), nullable=False),
        sa.Column("rule_name", sa.String(255), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("alert_level", sa.String(16), nullable=False, server_default="warning"),
        sa.Column("threshold", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("cooldown_period", sa.Integer(), nullable=False, server_default="300"),
        sa.Column("message_template", sa.Text(), nullable=True),
        sa.Column("keywords", sa.Text(), nullable=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("alert_groups.id", ondelete="SET NULL"), nullable=True),
        sa.Column("enable_escalation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("escalation_threshold", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("escalation_interval", sa.Integer(), nullable=False, server_default="1800"),
        sa.Column("escalation_config", JSON_TYPE, nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        indexes=[("idx_alert_rules_intent_type", ["intent_type"])],
    )
    create(
        "notification_methods",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("alert_rule_id", sa.Integer(), sa.ForeignKey("alert_rules.id", ondelete="CASCADE"), nullable=False),
        sa.Column("method_type", sa.String(32), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("recipient_config", JSON_TYPE, nullable=True),
        sa.Column("message_template", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="10"),
        _ts("created_at"),
        _ts("updated_at"),
    )
    create(
        "alert_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.String(255), nullable=True),
        sa.Column("rule_id", sa.Integer(), sa.ForeignKey("alert_rules.id", ondelete="SET NULL"), nullable=True),
        sa.Column("intent_type", sa.String(64), nullable=False),
        sa.Column("alert_level", sa.String(16), nullable=False),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("alert_groups.id", ondelete="SET NULL"), nullable=True),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("user_name", sa.String(255), nullable=True),
        sa.Column("group_name", sa.String(255), nullable=True),
        sa.Column("robot_id", sa.String(64), nullable=True),
        sa.Column("message_content", sa.Text(), nullable=True),
        sa.Column("alert_message", sa.Text(), nullable=False),
        sa.Column("notification_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("notification_result", JSON_TYPE, nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("is_handled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("handled_by", sa.String(64), nullable=True),
        _ts("handled_at", nullable=True),
        sa.Column("handled_note", sa.Text(), nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("escalation_history", JSON_TYPE, nullable=True),
        _ts("last_escalated_at", nullable=True),
        _ts("created_at"),
        indexes=[
            ("idx_alert_history_created_at", ["created_at"]),
            ("idx_alert_history_status", ["status"]),
            ("idx_alert_history_robot_id", ["robot_id"]),
        ],
    )
    create(
        "alert_dedup_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("dedup_key", sa.String(64), nullable=False, unique=True),
        sa.Column("rule_id", sa.Integer(), sa.ForeignKey("alert_rules.id", ondelete="CASCADE"), nullable=True),
        sa.Column("first_alert_id", sa.Integer(), nullable=True),
        sa.Column("last_alert_id", sa.Integer(), nullable=True),
        sa.Column("trigger_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("suppressed_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("last_trigger_at"),
        _ts("created_at"),
    )
    create(
        "alert_batch_operations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("operation_type", sa.String(32), nullable=False),
        sa.Column("alert_ids", JSON_TYPE, nullable=True),
        sa.Column("total_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("operated_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        _ts("created_at"),
    )

    # ---------- Flow engine ----------
    create(
        "flow_definitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("version", sa.String(16), nullable=False, server_default="1.0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("trigger_type", sa.String(32), nullable=False),
        sa.Column("trigger_config", JSON_TYPE, nullable=True),
        sa.Column("nodes", JSON_TYPE, nullable=False),
        sa.Column("edges", JSON_TYPE, nullable=False),
        sa.Column("variables", JSON_TYPE, nullable=True),
        sa.Column("timeout", sa.Integer(), nullable=False, server_default="30000"),
        sa.Column("retry_config", JSON_TYPE, nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.String(64), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        indexes=[("idx_flow_definitions_trigger_type", ["trigger_type"])],
    )
    create(
        "flow_instances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "flow_definition_id", sa.Integer(), sa.ForeignKey("flow_definitions.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("session_id", sa.String(255), nullable=True),
        sa.Column("robot_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="running"),
        sa.Column("current_node_id", sa.String(128), nullable=True),
        sa.Column("context", JSON_TYPE, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processing_time", sa.Integer(), nullable=True),
        _ts("started_at"),
        _ts("completed_at", nullable=True),
        indexes=[
            ("idx_flow_instances_definition", ["flow_definition_id"]),
            ("idx_flow_instances_status", ["status"]),
            ("idx_flow_instances_started_at", ["started_at"]),
        ],
    )
    create(
        "flow_execution_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("instance_id", sa.Integer(), sa.ForeignKey("flow_instances.id", ondelete="CASCADE"), nullable=False),
        sa.Column("node_id", sa.String(128), nullable=False),
        sa.Column("node_type", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("input_data", JSON_TYPE, nullable=True),
        sa.Column("output_data", JSON_TYPE, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        _ts("started_at"),
        _ts("completed_at", nullable=True),
        indexes=[("idx_flow_execution_logs_instance", ["instance_id"])],
    )

    # ---------- AI monitoring ----------
    create(
        "ai_providers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider_id", sa.String(64), nullable=False, unique=True),
        sa.Column("provider_name", sa.String(255), nullable=False),
        sa.Column("provider_type", sa.String(64), nullable=True),
        sa.Column("api_endpoint", sa.Text(), nullable=True),
        sa.Column("api_key", sa.Text(), nullable=True),
        sa.Column("rate_limit", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
    )
    create(
        "ai_models",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("model_id", sa.String(128), nullable=False, unique=True),
        sa.Column("model_name", sa.String(255), nullable=False),
        sa.Column("model_type", sa.String(64), nullable=True),
        sa.Column("provider_id", sa.String(64), nullable=True),
        sa.Column("api_endpoint", sa.Text(), nullable=True),
        sa.Column("api_key", sa.Text(), nullable=True),
        sa.Column("model_config", JSON_TYPE, nullable=True),
        sa.Column("max_tokens", sa.Integer(), nullable=True),
        sa.Column("temperature", sa.Float(), nullable=True),
        sa.Column("input_price", sa.Float(), nullable=False, server_default="0"),
        sa.Column("output_price", sa.Float(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
        indexes=[("idx_ai_models_provider_id", ["provider_id"])],
    )
    create(
        "ai_model_usage",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("model_id", sa.String(128), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=True),
        sa.Column("session_id", sa.String(255), nullable=True),
        sa.Column("operation_type", sa.String(64), nullable=True),
        sa.Column("input_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("input_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("output_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("response_time", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="success"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("extra_data", JSON_TYPE, nullable=True),
        _ts("created_at"),
        indexes=[
            ("idx_ai_model_usage_created_at", ["created_at"]),
            ("idx_ai_model_usage_model_id", ["model_id"]),
        ],
    )
    create(
        "ai_io_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.String(255), nullable=True),
        sa.Column("message_id", sa.String(255), nullable=True),
        sa.Column("robot_id", sa.String(64), nullable=True),
        sa.Column("robot_name", sa.String(255), nullable=True),
        sa.Column("operation_type", sa.String(64), nullable=False),
        sa.Column("ai_input", sa.Text(), nullable=True),
        sa.Column("ai_output", sa.Text(), nullable=True),
        sa.Column("model_id", sa.String(128), nullable=True),
        sa.Column("temperature", sa.Float(), nullable=True),
        sa.Column("request_duration", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="success"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("extra_data", JSON_TYPE, nullable=True),
        _ts("created_at"),
        indexes=[
            ("idx_ai_io_logs_session_id", ["session_id"]),
            ("idx_ai_io_logs_created_at", ["created_at"]),
        ],
    )

    # ---------- Collaboration / messages ----------
    create(
        "collaboration_decision_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.String(255), nullable=False),
        sa.Column("message_id", sa.String(255), nullable=False),
        sa.Column("robot_id", sa.String(64), nullable=False),
        sa.Column("should_ai_reply", sa.Boolean(), nullable=True),
        sa.Column("ai_action", sa.String(16), nullable=False, server_default="none"),
        sa.Column("staff_action", sa.String(16), nullable=False, server_default="none"),
        sa.Column("priority", sa.String(8), nullable=False, server_default="medium"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("staff_context", JSON_TYPE, nullable=True),
        sa.Column("info_context", JSON_TYPE, nullable=True),
        sa.Column("strategy", sa.String(64), nullable=True),
        sa.Column("staff_type", sa.String(32), nullable=True),
        sa.Column("message_type", sa.String(32), nullable=True),
        _ts("created_at"),
        _ts("updated_at", nullable=True),
        indexes=[
            ("idx_collab_decisions_session_id", ["session_id"]),
            ("idx_collab_decisions_message_id", ["message_id"]),
            ("idx_collab_decisions_robot_id", ["robot_id"]),
        ],
    )
    create(
        "session_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.String(255), nullable=False),
        sa.Column("robot_id", sa.String(64), nullable=False),
        sa.Column("message_id", sa.String(255), nullable=True),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("user_name", sa.String(255), nullable=True),
        sa.Column("group_name", sa.String(255), nullable=True),
        sa.Column("group_remark", sa.String(255), nullable=True),
        sa.Column("room_type", sa.Integer(), nullable=True),
        sa.Column("text_type", sa.Integer(), nullable=True),
        sa.Column("at_me", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("is_from_user", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("reply_to_message_id", sa.String(255), nullable=True),
        _ts("sent_at", nullable=True),
        _ts("created_at"),
        indexes=[
            ("idx_session_messages_session_id", ["session_id"]),
            ("idx_session_messages_robot_id", ["robot_id"]),
            ("idx_session_messages_created_at", ["created_at"]),
        ],
    )


def downgrade() -> None:
    for name in (
        "session_messages",
        "collaboration_decision_logs",
        "ai_io_logs",
        "ai_model_usage",
        "ai_models",
        "ai_providers",
        "flow_execution_logs",
        "flow_instances",
        "flow_definitions",
        "alert_batch_operations",
        "alert_dedup_records",
        "alert_history",
        "notification_methods",
        "alert_rules",
        "alert_groups",
        "qa_database",
        "api_call_logs",
        "robot_command_queue",
        "robot_commands",
        "robot_load_balancing",
        "robots",
        "robot_roles",
        "robot_groups",
        "system_settings",
        "audit_events",
        "role_permissions",
        "user_roles",
        "permissions",
        "roles",
        "users",
    ):
        op.drop_table(name)
