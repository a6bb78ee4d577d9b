from __future__ import annotations

import copy
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from sensorbridge.db.models import PayloadSample, SensorLog

_INT32_MAX = 2_147_483_647


def ingestion_latency_ms(ingested_at: datetime, reading_ts: datetime) -> int:
    lag_ms = int((ingested_at - reading_ts).total_seconds() * 1000)
    return max(0, min(lag_ms, _INT32_MAX))


def add_sensor_log(
    db: Session,
    *,
    sensor_channel_id: int,
    device_id: str,
    ts: datetime,
    value_raw: float | None,
    value_engineered: float | None,
    quality_flag: str,
    ingestion_source: str,
    status_code: str,
    ingestion_latency_ms: int,
    payload_seq: int | None,
) -> SensorLog:
    """Stage one reading in the caller's transaction."""
    log = SensorLog(
        sensor_channel_id=sensor_channel_id,
        device_id=device_id,
        ts=ts,
        value_raw=value_raw,
        value_engineered=value_engineered,
        quality_flag=quality_flag,
        ingestion_source=ingestion_source,
        status_code=status_code,
        ingestion_latency_ms=ingestion_latency_ms,
        payload_seq=payload_seq,
    )
    db.add(log)
    return log


def payload_seq_seen(db: Session, *, device_id: str, payload_seq: int) -> bool:
    return (
        db.scalar(
            select(SensorLog.id)
            .where(SensorLog.device_id == device_id, SensorLog.payload_seq == payload_seq)
            .limit(1)
        )
        is not None
    )


def add_payload_sample(
    db: Session,
    *,
    device_id: str,
    payload: dict[str, Any],
    received_at: datetime,
    window_size: int,
) -> PayloadSample:
    """Stage a sample and drop the ones that fall out of the per-device window."""
    sample = PayloadSample(device_id=device_id, payload_json=copy.deepcopy(payload), received_at=received_at)
    db.add(sample)
    db.flush()

    keep_ids = select(PayloadSample.id).where(PayloadSample.device_id == device_id).order_by(
        PayloadSample.received_at.desc(), PayloadSample.id.desc()
    ).limit(window_size)
    db.execute(
        delete(PayloadSample)
        .where(PayloadSample.device_id == device_id, PayloadSample.id.not_in(keep_ids.scalar_subquery()))
        .execution_options(synchronize_session=False)
    )
    return sample


def list_payload_samples(db: Session, *, device_id: str, limit: int) -> list[PayloadSample]:
    return list(
        db.scalars(
            select(PayloadSample)
            .where(PayloadSample.device_id == device_id)
            .order_by(PayloadSample.received_at.desc(), PayloadSample.id.desc())
            .limit(limit)
        )
    )
