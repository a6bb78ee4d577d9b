from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from sensorbridge.db.models import AlertRule, Device, DeviceProfile, SensorChannel


@dataclass(frozen=True)
class SensorTypeSnapshot:
    id: int
    code: str
    conversion_formula: str | None
    multiplier: float
    offset_value: float


@dataclass(frozen=True)
class ChannelSnapshot:
    id: int
    metric_code: str
    unit: str | None
    conversion_formula: str | None
    multiplier: float | None
    offset_value: float | None
    sensor_type: SensorTypeSnapshot | None


@dataclass(frozen=True)
class AlertRuleSnapshot:
    id: int
    sensor_channel_id: int
    rule_type: str
    severity: str
    params_json: dict[str, Any]
    enabled: bool


@dataclass(frozen=True)
class ProfileSnapshot:
    id: int
    code: str
    enabled: bool
    mapping_version: int
    mapping_json: dict[str, Any]
    channels: tuple[ChannelSnapshot, ...]
    rules: tuple[AlertRuleSnapshot, ...]

    def channel_by_code(self, metric_code: str) -> ChannelSnapshot | None:
        for channel in self.channels:
            if channel.metric_code == metric_code:
                return channel
        return None

    def rules_for_channel(self, channel_id: int) -> list[AlertRuleSnapshot]:
        return [rule for rule in self.rules if rule.sensor_channel_id == channel_id]


def list_profiles(db: Session) -> list[DeviceProfile]:
    return list(db.scalars(select(DeviceProfile).order_by(DeviceProfile.code)))


def get_profile_by_id(db: Session, profile_id: int) -> DeviceProfile | None:
    return db.get(DeviceProfile, profile_id)


def create_profile(db: Session, *, code: str, name: str, enabled: bool = True) -> DeviceProfile:
    profile = DeviceProfile(
        code=code,
        name=name,
        enabled=enabled,
        mapping_json={"channels": {}, "metadata": {}},
        mapping_version=0,
    )
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


def update_profile(
    db: Session,
    profile: DeviceProfile,
    *,
    name: str | None = None,
    enabled: bool | None = None,
) -> DeviceProfile:
    if name is not None:
        profile.name = name
    if enabled is not None:
        profile.enabled = enabled
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


def replace_profile_mapping(db: Session, profile: DeviceProfile, document: dict[str, Any]) -> DeviceProfile:
    """Swap in a new mapping document and bump its version. Does not commit."""
    profile.mapping_json = copy.deepcopy(document)
    profile.mapping_version = (profile.mapping_version or 0) + 1
    db.add(profile)
    db.flush()
    return profile


def delete_profile(db: Session, profile: DeviceProfile) -> None:
    db.delete(profile)
    db.commit()


def get_profile_state(db: Session, profile_id: int) -> tuple[bool, int] | None:
    row = db.execute(
        select(DeviceProfile.enabled, DeviceProfile.mapping_version).where(DeviceProfile.id == profile_id)
    ).first()
    if row is None:
        return None
    return bool(row.enabled), int(row.mapping_version)


def load_profile_snapshot(db: Session, profile_id: int) -> ProfileSnapshot | None:
    profile = db.scalars(
        select(DeviceProfile)
        .where(DeviceProfile.id == profile_id)
        .options(selectinload(DeviceProfile.channels).selectinload(SensorChannel.sensor_type))
        .execution_options(populate_existing=True)
    ).first()
    if profile is None:
        return None

    channels = tuple(_channel_snapshot(channel) for channel in profile.channels)
    channel_ids = [channel.id for channel in channels]
    rules: tuple[AlertRuleSnapshot, ...] = ()
    if channel_ids:
        rule_rows = db.scalars(
            select(AlertRule)
            .where(AlertRule.sensor_channel_id.in_(channel_ids))
            .order_by(AlertRule.id)
        )
        rules = tuple(
            AlertRuleSnapshot(
                id=rule.id,
                sensor_channel_id=rule.sensor_channel_id,
                rule_type=rule.rule_type,
                severity=rule.severity,
                params_json=dict(rule.params_json or {}),
                enabled=rule.enabled,
            )
            for rule in rule_rows
        )

    return ProfileSnapshot(
        id=profile.id,
        code=profile.code,
        enabled=profile.enabled,
        mapping_version=profile.mapping_version,
        mapping_json=copy.deepcopy(profile.mapping_json or {}),
        channels=channels,
        rules=rules,
    )


def _channel_snapshot(channel: SensorChannel) -> ChannelSnapshot:
    sensor_type = channel.sensor_type
    return ChannelSnapshot(
        id=channel.id,
        metric_code=channel.metric_code,
        unit=channel.unit if channel.unit is not None else (sensor_type.unit if sensor_type else None),
        conversion_formula=channel.conversion_formula,
        multiplier=channel.multiplier,
        offset_value=channel.offset_value,
        sensor_type=(
            SensorTypeSnapshot(
                id=sensor_type.id,
                code=sensor_type.code,
                conversion_formula=sensor_type.conversion_formula,
                multiplier=sensor_type.multiplier,
                offset_value=sensor_type.offset_value,
            )
            if sensor_type is not None
            else None
        ),
    )


def list_devices(db: Session, *, profile_id: int | None = None) -> list[Device]:
    statement = select(Device).order_by(Device.device_id)
    if profile_id is not None:
        statement = statement.where(Device.profile_id == profile_id)
    return list(db.scalars(statement))


def get_device_by_device_id(db: Session, device_id: str) -> Device | None:
    return db.scalars(select(Device).where(Device.device_id == device_id)).first()


def create_device(
    db: Session,
    *,
    device_id: str,
    profile_id: int | None,
    enabled: bool = True,
) -> Device:
    device = Device(device_id=device_id, profile_id=profile_id, enabled=enabled)
    db.add(device)
    db.commit()
    db.refresh(device)
    return device


def update_device(
    db: Session,
    device: Device,
    *,
    profile_id: int | None = None,
    enabled: bool | None = None,
) -> Device:
    if profile_id is not None:
        device.profile_id = profile_id
    if enabled is not None:
        device.enabled = enabled
    db.add(device)
    db.commit()
    db.refresh(device)
    return device


def touch_device_last_seen(db: Session, device: Device, seen_at: datetime) -> None:
    device.last_seen_at = seen_at
    db.add(device)
