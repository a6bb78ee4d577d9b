from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Event
from typing import Any, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from sensorbridge.core.config import Settings
from sensorbridge.db.models import AlertEvent, SensorLog
from sensorbridge.repositories.mappings import (
    ChannelSnapshot,
    ProfileSnapshot,
    get_device_by_device_id,
    get_profile_state,
    load_profile_snapshot,
    touch_device_last_seen,
)
from sensorbridge.repositories.telemetry import (
    add_payload_sample,
    add_sensor_log,
    ingestion_latency_ms,
    payload_seq_seen,
)
from sensorbridge.services.alert_lifecycle import AlertLifecycleManager
from sensorbridge.services.conversion import convert, effective_rule
from sensorbridge.services.errors import ConversionError, IngestAborted, MissingField, NotFound
from sensorbridge.services.mapping_resolver import (
    ABSENT,
    ChannelBinding,
    MappingSnapshot,
    PayloadMetadata,
    ResolvedPayload,
    interpret_metadata,
    resolve,
)
from sensorbridge.services.payload_parser import coerce_number, to_utc

STATUS_OK = "ok"
STATUS_MISSING_FIELD = "missing_field"
STATUS_NOT_NUMERIC = "not_numeric"
STATUS_CONVERSION_ERROR = "conversion_error"


@dataclass(frozen=True)
class ChannelError:
    channel_code: str
    status_code: str
    detail: str


@dataclass(frozen=True)
class ChannelOutcome:
    channel: ChannelSnapshot
    payload_path: str
    value_raw: float | None
    value_engineered: float | None
    status_code: str
    detail: str | None = None

    @property
    def good(self) -> bool:
        return self.status_code == STATUS_OK


@dataclass
class IngestResult:
    device_id: str
    readings: list[SensorLog] = field(default_factory=list)
    alert_events: list[AlertEvent] = field(default_factory=list)
    metadata: PayloadMetadata | None = None
    errors: list[ChannelError] = field(default_factory=list)
    duplicate: bool = False
    mapping_version: int | None = None


@dataclass(frozen=True)
class IngestItem:
    device_id: str
    payload: dict[str, Any]
    arrived_at: datetime | None = None
    payload_seq: int | None = None


class TelemetryIngestService:
    """Turns one device payload into sensor logs and alert events, all or nothing."""

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        alert_manager: AlertLifecycleManager,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._alert_manager = alert_manager
        self._channel_executor = ThreadPoolExecutor(
            max_workers=settings.channel_workers,
            thread_name_prefix="sensorbridge-channel",
        )
        self._logger = logging.getLogger("sensorbridge.telemetry_ingest")

    def close(self) -> None:
        self._channel_executor.shutdown(wait=True)

    def ingest(
        self,
        device_id: str,
        payload: dict[str, Any],
        arrived_at: datetime | None = None,
        payload_seq: int | None = None,
        *,
        cancel_event: Event | None = None,
    ) -> IngestResult:
        arrived_utc = to_utc(arrived_at) if arrived_at is not None else datetime.now(timezone.utc)
        if not isinstance(payload, dict):
            raise ValueError("payload must be a JSON object")
        self._check_cancelled(cancel_event, device_id)

        with self._session_factory() as db:
            try:
                return self._ingest_in_session(
                    db,
                    device_id=device_id,
                    payload=payload,
                    arrived_at=arrived_utc,
                    payload_seq=payload_seq,
                    cancel_event=cancel_event,
                )
            except IngestAborted as exc:
                db.rollback()
                self._logger.warning("ingest aborted device_id=%s reason=%s", device_id, exc)
                raise
            except IntegrityError:
                db.rollback()
                if payload_seq is None:
                    raise
                # A concurrent delivery of the same sequence number committed first.
                self._logger.info(
                    "duplicate payload rejected on commit device_id=%s payload_seq=%s",
                    device_id,
                    payload_seq,
                )
                return IngestResult(device_id=device_id, duplicate=True)
            except Exception:
                db.rollback()
                raise

    def ingest_many(
        self,
        items: Iterable[IngestItem],
        *,
        cancel_event: Event | None = None,
    ) -> list[IngestResult | BaseException]:
        """Ingest independent payloads in parallel; results keep the input order.

        A payload that fails is reported by its exception in the matching slot
        instead of failing the whole batch.
        """
        batch = list(items)
        if not batch:
            return []

        with ThreadPoolExecutor(
            max_workers=min(self._settings.ingest_workers, len(batch)),
            thread_name_prefix="sensorbridge-ingest",
        ) as executor:
            futures = [
                executor.submit(
                    self.ingest,
                    item.device_id,
                    item.payload,
                    item.arrived_at,
                    item.payload_seq,
                    cancel_event=cancel_event,
                )
                for item in batch
            ]
            results: list[IngestResult | BaseException] = []
            for item, future in zip(batch, futures):
                try:
                    results.append(future.result())
                except Exception as exc:
                    self._logger.warning(
                        "batch ingest item failed device_id=%s error=%s",
                        item.device_id,
                        exc,
                    )
                    results.append(exc)
        return results

    def _ingest_in_session(
        self,
        db: Session,
        *,
        device_id: str,
        payload: dict[str, Any],
        arrived_at: datetime,
        payload_seq: int | None,
        cancel_event: Event | None,
    ) -> IngestResult:
        device = get_device_by_device_id(db, device_id)
        if device is None:
            raise NotFound("Device", device_id)
        if not device.enabled:
            raise IngestAborted(f"device {device_id} is disabled")

        if payload_seq is not None and payload_seq_seen(db, device_id=device_id, payload_seq=payload_seq):
            self._logger.info("duplicate payload skipped device_id=%s payload_seq=%s", device_id, payload_seq)
            return IngestResult(device_id=device_id, duplicate=True)

        add_payload_sample(
            db,
            device_id=device_id,
            payload=payload,
            received_at=arrived_at,
            window_size=self._settings.sample_window_size,
        )

        if device.profile_id is None:
            touch_device_last_seen(db, device, arrived_at)
            db.commit()
            return IngestResult(
                device_id=device_id,
                errors=[ChannelError(channel_code="*", status_code="no_profile", detail="device has no profile")],
            )

        profile = load_profile_snapshot(db, device.profile_id)
        if profile is None or not profile.enabled:
            raise IngestAborted(f"profile {device.profile_id} is missing or disabled")
        mapping = MappingSnapshot.from_document(
            profile.mapping_json,
            profile_id=profile.id,
            version=profile.mapping_version,
        )

        resolved = resolve(mapping, payload)
        metadata = interpret_metadata(mapping, resolved, payload, arrived_at=arrived_at)
        result = IngestResult(device_id=device_id, metadata=metadata, mapping_version=mapping.version)

        outcomes = self._convert_channels(profile, mapping, resolved, result)
        self._check_cancelled(cancel_event, device_id)

        ingested_at = datetime.now(timezone.utc)
        latency_ms = ingestion_latency_ms(ingested_at, metadata.ts)
        for outcome in outcomes:
            if not outcome.good:
                result.errors.append(
                    ChannelError(
                        channel_code=outcome.channel.metric_code,
                        status_code=outcome.status_code,
                        detail=outcome.detail or outcome.status_code,
                    )
                )
            result.readings.append(
                add_sensor_log(
                    db,
                    sensor_channel_id=outcome.channel.id,
                    device_id=device_id,
                    ts=metadata.ts,
                    value_raw=outcome.value_raw,
                    value_engineered=outcome.value_engineered,
                    quality_flag="good" if outcome.good else "bad",
                    ingestion_source=self._settings.ingestion_source,
                    status_code=outcome.status_code,
                    ingestion_latency_ms=latency_ms,
                    payload_seq=payload_seq,
                )
            )
        db.flush()

        good_outcomes = [outcome for outcome in outcomes if outcome.good]
        rule_ids = [
            rule.id for outcome in good_outcomes for rule in profile.rules_for_channel(outcome.channel.id)
        ]
        with self._alert_manager.hold_rules(rule_ids):
            for outcome in good_outcomes:
                for rule in profile.rules_for_channel(outcome.channel.id):
                    event = self._alert_manager.evaluate(
                        db,
                        rule=rule,
                        value=outcome.value_engineered,
                        triggered_at=metadata.ts,
                    )
                    if event is not None:
                        result.alert_events.append(event)

            touch_device_last_seen(db, device, arrived_at)
            self._check_cancelled(cancel_event, device_id)
            state = get_profile_state(db, profile.id)
            if state is None or not state[0]:
                raise IngestAborted(f"profile {profile.id} was deleted or disabled during ingest")
            db.commit()

        self._logger.info(
            "payload ingested device_id=%s profile_id=%s mapping_version=%s readings=%s bad=%s alerts=%s",
            device_id,
            profile.id,
            mapping.version,
            len(result.readings),
            len(result.errors),
            len(result.alert_events),
        )
        return result

    def _convert_channels(
        self,
        profile: ProfileSnapshot,
        mapping: MappingSnapshot,
        resolved: ResolvedPayload,
        result: IngestResult,
    ) -> list[ChannelOutcome]:
        jobs: list[tuple[ChannelSnapshot, ChannelBinding]] = []
        for binding in mapping.channels:
            channel = profile.channel_by_code(binding.channel_code)
            if channel is None:
                result.errors.append(
                    ChannelError(
                        channel_code=binding.channel_code,
                        status_code="unknown_channel",
                        detail=f"profile {profile.code} has no channel '{binding.channel_code}'",
                    )
                )
                continue
            jobs.append((channel, binding))

        futures = [
            self._channel_executor.submit(
                self._convert_channel,
                channel,
                binding,
                resolved.channel_value(binding.channel_code),
            )
            for channel, binding in jobs
        ]
        # Barrier: readings and alerts are written only once every channel is converted.
        return [future.result() for future in futures]

    def _convert_channel(
        self,
        channel: ChannelSnapshot,
        binding: ChannelBinding,
        raw: Any,
    ) -> ChannelOutcome:
        if raw is ABSENT:
            return ChannelOutcome(
                channel=channel,
                payload_path=binding.payload_path,
                value_raw=None,
                value_engineered=None,
                status_code=STATUS_MISSING_FIELD,
                detail=str(MissingField(binding.payload_path)),
            )

        numeric = coerce_number(raw)
        if numeric is None:
            return ChannelOutcome(
                channel=channel,
                payload_path=binding.payload_path,
                value_raw=None,
                value_engineered=None,
                status_code=STATUS_NOT_NUMERIC,
                detail=f"value at {binding.payload_path} is not numeric: {raw!r}",
            )

        rule = effective_rule(channel, channel.sensor_type)
        try:
            engineered = convert(
                numeric,
                rule,
                timeout_ms=self._settings.formula_timeout_ms,
                max_length=self._settings.formula_max_length,
                max_nodes=self._settings.formula_max_nodes,
            )
        except ConversionError as exc:
            self._logger.warning(
                "conversion failed channel=%s rule=%s raw=%s error=%s",
                channel.metric_code,
                rule.describe(),
                numeric,
                exc.detail,
            )
            return ChannelOutcome(
                channel=channel,
                payload_path=binding.payload_path,
                value_raw=numeric,
                value_engineered=None,
                status_code=STATUS_CONVERSION_ERROR,
                detail=exc.detail,
            )

        return ChannelOutcome(
            channel=channel,
            payload_path=binding.payload_path,
            value_raw=numeric,
            value_engineered=engineered,
            status_code=STATUS_OK,
        )

    def _check_cancelled(self, cancel_event: Event | None, device_id: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise IngestAborted(f"ingest of device {device_id} was cancelled")
