from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from sensorbridge.db.models import AlertRule, SensorChannel, SensorType


def list_sensor_types(db: Session) -> list[SensorType]:
    return list(db.scalars(select(SensorType).order_by(SensorType.code)))


def get_sensor_type_by_id(db: Session, sensor_type_id: int) -> SensorType | None:
    return db.get(SensorType, sensor_type_id)


def create_sensor_type(
    db: Session,
    *,
    code: str,
    name: str,
    unit: str | None,
    conversion_formula: str | None,
    multiplier: float,
    offset_value: float,
) -> SensorType:
    sensor_type = SensorType(
        code=code,
        name=name,
        unit=unit,
        conversion_formula=conversion_formula,
        multiplier=multiplier,
        offset_value=offset_value,
    )
    db.add(sensor_type)
    db.commit()
    db.refresh(sensor_type)
    return sensor_type


def update_sensor_type(db: Session, sensor_type: SensorType, updates: dict[str, Any]) -> SensorType:
    for key, value in updates.items():
        setattr(sensor_type, key, value)
    db.add(sensor_type)
    db.commit()
    db.refresh(sensor_type)
    return sensor_type


def list_channels(db: Session, *, profile_id: int | None = None) -> list[SensorChannel]:
    statement = select(SensorChannel).order_by(SensorChannel.profile_id, SensorChannel.metric_code)
    if profile_id is not None:
        statement = statement.where(SensorChannel.profile_id == profile_id)
    return list(db.scalars(statement))


def get_channel_by_id(db: Session, channel_id: int) -> SensorChannel | None:
    return db.get(SensorChannel, channel_id)


def create_channel(db: Session, **fields: Any) -> SensorChannel:
    channel = SensorChannel(**fields)
    db.add(channel)
    db.commit()
    db.refresh(channel)
    return channel


def update_channel(
    db: Session,
    channel: SensorChannel,
    updates: dict[str, Any],
    *,
    commit: bool = True,
) -> SensorChannel:
    for key, value in updates.items():
        setattr(channel, key, value)
    db.add(channel)
    if commit:
        db.commit()
        db.refresh(channel)
    else:
        db.flush()
    return channel


def count_rules_for_channel(db: Session, channel_id: int) -> int:
    return int(
        db.scalar(select(func.count(AlertRule.id)).where(AlertRule.sensor_channel_id == channel_id)) or 0
    )


def delete_channel(db: Session, channel: SensorChannel) -> None:
    dependent_rules = count_rules_for_channel(db, channel.id)
    if dependent_rules:
        raise ValueError(
            f"Sensor channel {channel.id} is referenced by {dependent_rules} alert rule(s) and cannot be deleted"
        )
    db.delete(channel)
    db.commit()


def list_alert_rules(db: Session, *, channel_id: int | None = None) -> list[AlertRule]:
    statement = select(AlertRule).order_by(AlertRule.id)
    if channel_id is not None:
        statement = statement.where(AlertRule.sensor_channel_id == channel_id)
    return list(db.scalars(statement))


def get_alert_rule_by_id(db: Session, rule_id: int) -> AlertRule | None:
    return db.get(AlertRule, rule_id)


def create_alert_rule(
    db: Session,
    *,
    sensor_channel_id: int,
    rule_type: str,
    severity: str,
    params_json: dict[str, Any],
    enabled: bool,
) -> AlertRule:
    rule = AlertRule(
        sensor_channel_id=sensor_channel_id,
        rule_type=rule_type,
        severity=severity,
        params_json=params_json,
        enabled=enabled,
    )
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


def update_alert_rule(db: Session, rule: AlertRule, updates: dict[str, Any]) -> AlertRule:
    for key, value in updates.items():
        setattr(rule, key, value)
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule
