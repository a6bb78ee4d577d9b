from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sensorbridge.db.base import Base, BigIntId, JsonDocument


class DeviceProfile(Base):
    __tablename__ = "device_profiles"
    __table_args__ = (UniqueConstraint("code", name="uq_device_profiles_code"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    mapping_json: Mapped[dict] = mapped_column(
        JsonDocument,
        nullable=False,
        default=dict,
    )
    mapping_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    channels: Mapped[list["SensorChannel"]] = relationship(
        back_populates="profile",
        cascade="all, delete-orphan",
        order_by="SensorChannel.metric_code",
    )


class Device(Base):
    __tablename__ = "devices"
    __table_args__ = (UniqueConstraint("device_id", name="uq_devices_device_id"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    profile_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("device_profiles.id", ondelete="SET NULL"),
        nullable=True,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class SensorType(Base):
    __tablename__ = "sensor_types"
    __table_args__ = (UniqueConstraint("code", name="uq_sensor_types_code"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    unit: Mapped[str | None] = mapped_column(String(32), nullable=True)
    conversion_formula: Mapped[str | None] = mapped_column(Text, nullable=True)
    multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0, server_default="1.0")
    offset_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0.0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class SensorChannel(Base):
    __tablename__ = "sensor_channels"
    __table_args__ = (
        UniqueConstraint("profile_id", "metric_code", name="uq_sensor_channels_profile_metric"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    profile_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("device_profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    sensor_type_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("sensor_types.id", ondelete="RESTRICT"),
        nullable=True,
    )
    metric_code: Mapped[str] = mapped_column(String(64), nullable=False)
    unit: Mapped[str | None] = mapped_column(String(32), nullable=True)
    min_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    conversion_formula: Mapped[str | None] = mapped_column(Text, nullable=True)
    multiplier: Mapped[float | None] = mapped_column(Float, nullable=True)
    offset_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    profile: Mapped[DeviceProfile] = relationship(back_populates="channels")
    sensor_type: Mapped[SensorType | None] = relationship()


class AlertRule(Base):
    __tablename__ = "alert_rules"
    __table_args__ = (
        CheckConstraint("rule_type IN ('threshold')", name="ck_alert_rules_rule_type"),
        CheckConstraint(
            "severity IN ('info','warning','error','critical')",
            name="ck_alert_rules_severity",
        ),
        Index("ix_alert_rules_sensor_channel_id", "sensor_channel_id"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    sensor_channel_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("sensor_channels.id", ondelete="RESTRICT"),
        nullable=False,
    )
    rule_type: Mapped[str] = mapped_column(String(32), nullable=False, default="threshold")
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="warning")
    params_json: Mapped[dict] = mapped_column(JsonDocument, nullable=False, default=dict)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class AlertEvent(Base):
    __tablename__ = "alert_events"
    __table_args__ = (
        CheckConstraint(
            "status IN ('open','acknowledged','cleared')",
            name="ck_alert_events_status",
        ),
        CheckConstraint(
            "severity IN ('warning','critical')",
            name="ck_alert_events_severity",
        ),
        Index("ix_alert_events_rule_status", "alert_rule_id", "status"),
        Index("ix_alert_events_triggered_at", "triggered_at"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    alert_rule_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("alert_rules.id", ondelete="RESTRICT"),
        nullable=False,
    )
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open", server_default="open")
    acknowledged_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cleared_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    cleared_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    alert_rule: Mapped[AlertRule] = relationship()


class SensorLog(Base):
    __tablename__ = "sensor_logs"
    __table_args__ = (
        CheckConstraint("quality_flag IN ('good','bad')", name="ck_sensor_logs_quality_flag"),
        UniqueConstraint("sensor_channel_id", "payload_seq", name="uq_sensor_logs_channel_payload_seq"),
        Index("ix_sensor_logs_channel_ts", "sensor_channel_id", "ts"),
        Index("ix_sensor_logs_device_payload_seq", "device_id", "payload_seq"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    sensor_channel_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("sensor_channels.id", ondelete="CASCADE"),
        nullable=False,
    )
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    value_raw: Mapped[float | None] = mapped_column(Float, nullable=True)
    value_engineered: Mapped[float | None] = mapped_column(Float, nullable=True)
    quality_flag: Mapped[str] = mapped_column(String(8), nullable=False)
    ingestion_source: Mapped[str] = mapped_column(String(64), nullable=False)
    status_code: Mapped[str] = mapped_column(String(32), nullable=False)
    ingestion_latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload_seq: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class PayloadSample(Base):
    __tablename__ = "payload_samples"
    __table_args__ = (Index("ix_payload_samples_device_received", "device_id", "received_at"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_json: Mapped[dict] = mapped_column(JsonDocument, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
