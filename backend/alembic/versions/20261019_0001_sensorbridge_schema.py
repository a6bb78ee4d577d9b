"""sensorbridge schema: profiles, catalog, alerts, sensor logs, samples

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "device_profiles",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column(
            "mapping_json",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{\"channels\": {}, \"metadata\": {}}'::jsonb"),
            nullable=False,
        ),
        sa.Column("mapping_version", sa.Integer(), server_default=sa.text("0"), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_device_profiles_code"),
    )

    op.create_table(
        "devices",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("profile_id", sa.BigInteger(), nullable=True),
        sa.Column("enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["profile_id"], ["device_profiles.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("device_id", name="uq_devices_device_id"),
    )

    op.create_table(
        "sensor_types",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("unit", sa.String(length=32), nullable=True),
        sa.Column("conversion_formula", sa.Text(), nullable=True),
        sa.Column("multiplier", sa.Float(), server_default=sa.text("1.0"), nullable=False),
        sa.Column("offset_value", sa.Float(), server_default=sa.text("0.0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_sensor_types_code"),
    )

    op.create_table(
        "sensor_channels",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("profile_id", sa.BigInteger(), nullable=False),
        sa.Column("sensor_type_id", sa.BigInteger(), nullable=True),
        sa.Column("metric_code", sa.String(length=64), nullable=False),
        sa.Column("unit", sa.String(length=32), nullable=True),
        sa.Column("min_threshold", sa.Float(), nullable=True),
        sa.Column("max_threshold", sa.Float(), nullable=True),
        sa.Column("conversion_formula", sa.Text(), nullable=True),
        sa.Column("multiplier", sa.Float(), nullable=True),
        sa.Column("offset_value", sa.Float(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["profile_id"], ["device_profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["sensor_type_id"], ["sensor_types.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("profile_id", "metric_code", name="uq_sensor_channels_profile_metric"),
    )

    op.create_table(
        "alert_rules",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("sensor_channel_id", sa.BigInteger(), nullable=False),
        sa.Column("rule_type", sa.String(length=32), server_default=sa.text("'threshold'"), nullable=False),
        sa.Column("severity", sa.String(length=16), server_default=sa.text("'warning'"), nullable=False),
        sa.Column(
            "params_json",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("rule_type IN ('threshold')", name="ck_alert_rules_rule_type"),
        sa.CheckConstraint(
            "severity IN ('info','warning','error','critical')",
            name="ck_alert_rules_severity",
        ),
        sa.ForeignKeyConstraint(["sensor_channel_id"], ["sensor_channels.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_alert_rules_sensor_channel_id", "alert_rules", ["sensor_channel_id"])

    op.create_table(
        "alert_events",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("alert_rule_id", sa.BigInteger(), nullable=False),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), server_default=sa.text("'open'"), nullable=False),
        sa.Column("acknowledged_by", sa.String(length=128), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cleared_by", sa.String(length=128), nullable=True),
        sa.Column("cleared_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('open','acknowledged','cleared')", name="ck_alert_events_status"),
        sa.CheckConstraint("severity IN ('warning','critical')", name="ck_alert_events_severity"),
        sa.ForeignKeyConstraint(["alert_rule_id"], ["alert_rules.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_alert_events_rule_status", "alert_events", ["alert_rule_id", "status"])
    op.execute("CREATE INDEX ix_alert_events_triggered_at ON alert_events (triggered_at DESC)")

    op.create_table(
        "sensor_logs",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("sensor_channel_id", sa.BigInteger(), nullable=False),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("value_raw", sa.Float(), nullable=True),
        sa.Column("value_engineered", sa.Float(), nullable=True),
        sa.Column("quality_flag", sa.String(length=8), nullable=False),
        sa.Column("ingestion_source", sa.String(length=64), nullable=False),
        sa.Column("status_code", sa.String(length=32), nullable=False),
        sa.Column("ingestion_latency_ms", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("payload_seq", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("quality_flag IN ('good','bad')", name="ck_sensor_logs_quality_flag"),
        sa.ForeignKeyConstraint(["sensor_channel_id"], ["sensor_channels.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sensor_channel_id", "payload_seq", name="uq_sensor_logs_channel_payload_seq"),
    )
    op.execute("CREATE INDEX ix_sensor_logs_channel_ts ON sensor_logs (sensor_channel_id, ts DESC)")
    op.create_index("ix_sensor_logs_device_payload_seq", "sensor_logs", ["device_id", "payload_seq"])

    op.create_table(
        "payload_samples",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.execute(
        "CREATE INDEX ix_payload_samples_device_received ON payload_samples (device_id, received_at DESC)"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_payload_samples_device_received")
    op.drop_table("payload_samples")
    op.drop_index("ix_sensor_logs_device_payload_seq", table_name="sensor_logs")
    op.execute("DROP INDEX IF EXISTS ix_sensor_logs_channel_ts")
    op.drop_table("sensor_logs")
    op.execute("DROP INDEX IF EXISTS ix_alert_events_triggered_at")
    op.drop_index("ix_alert_events_rule_status", table_name="alert_events")
    op.drop_table("alert_events")
    op.drop_index("ix_alert_rules_sensor_channel_id", table_name="alert_rules")
    op.drop_table("alert_rules")
    op.drop_table("sensor_channels")
    op.drop_table("sensor_types")
    op.drop_table("devices")
    op.drop_table("device_profiles")
