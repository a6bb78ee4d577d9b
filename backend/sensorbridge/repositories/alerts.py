from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from sensorbridge.db.models import AlertEvent, AlertRule

UNRESOLVED_STATUSES = ("open", "acknowledged")


def get_alert_event_by_id(db: Session, event_id: int) -> AlertEvent | None:
    return db.get(AlertEvent, event_id)


def get_alert_event_rule_id(db: Session, event_id: int) -> int | None:
    return db.scalar(select(AlertEvent.alert_rule_id).where(AlertEvent.id == event_id))


def find_unresolved_event(db: Session, rule_id: int) -> AlertEvent | None:
    return db.scalars(
        select(AlertEvent)
        .where(
            AlertEvent.alert_rule_id == rule_id,
            AlertEvent.status.in_(UNRESOLVED_STATUSES),
        )
        .order_by(AlertEvent.triggered_at.desc(), AlertEvent.id.desc())
    ).first()


def add_alert_event(
    db: Session,
    *,
    alert_rule_id: int,
    triggered_at: datetime,
    value: float,
    severity: str,
) -> AlertEvent:
    """Stage a new open event in the caller's transaction."""
    event = AlertEvent(
        alert_rule_id=alert_rule_id,
        triggered_at=triggered_at,
        value=value,
        severity=severity,
        status="open",
    )
    db.add(event)
    db.flush()
    return event


def list_open_alert_events(db: Session, *, channel_id: int | None = None) -> list[AlertEvent]:
    statement = (
        select(AlertEvent)
        .where(AlertEvent.status == "open")
        .order_by(AlertEvent.triggered_at.desc(), AlertEvent.id.desc())
    )
    if channel_id is not None:
        statement = statement.join(AlertRule, AlertRule.id == AlertEvent.alert_rule_id).where(
            AlertRule.sensor_channel_id == channel_id
        )
    return list(db.scalars(statement))


def list_alert_events(
    db: Session,
    *,
    rule_id: int | None = None,
    status: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[AlertEvent], int]:
    filters = []
    if rule_id is not None:
        filters.append(AlertEvent.alert_rule_id == rule_id)
    if status is not None:
        filters.append(AlertEvent.status == status)
    if start is not None:
        filters.append(AlertEvent.triggered_at >= start)
    if end is not None:
        filters.append(AlertEvent.triggered_at <= end)

    total = int(db.scalar(select(func.count(AlertEvent.id)).where(*filters)) or 0)
    items = list(
        db.scalars(
            select(AlertEvent)
            .where(*filters)
            .order_by(AlertEvent.triggered_at.desc(), AlertEvent.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
    )
    return items, total


def delete_alert_event(db: Session, event: AlertEvent) -> None:
    db.delete(event)
    db.commit()
