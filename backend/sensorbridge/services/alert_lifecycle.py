from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from sensorbridge.core.config import Settings
from sensorbridge.db.models import AlertEvent
from sensorbridge.repositories.alerts import (
    add_alert_event,
    delete_alert_event,
    find_unresolved_event,
    get_alert_event_by_id,
    get_alert_event_rule_id,
    list_alert_events,
    list_open_alert_events,
)
from sensorbridge.services.errors import InvalidTransition, NotFound
from sensorbridge.services.thresholds import SAFE, ThresholdParams, classify

STATUS_OPEN = "open"
STATUS_ACKNOWLEDGED = "acknowledged"
STATUS_CLEARED = "cleared"
EVENT_STATUSES = (STATUS_OPEN, STATUS_ACKNOWLEDGED, STATUS_CLEARED)

# Fields an operator may patch directly; status only moves through acknowledge/clear.
PATCHABLE_FIELDS = frozenset({"note"})


class KeyedLockRegistry:
    """One re-entrant lock per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Any, threading.RLock] = {}

    def _lock_for(self, key: Any) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Any) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield

    @contextmanager
    def hold_many(self, keys: Iterable[Any]) -> Iterator[None]:
        # Sorted acquisition keeps two holders of overlapping key sets from deadlocking.
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key))
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class AlertLifecycleManager:
    def __init__(
        self,
        *,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
    ):
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rule_locks = KeyedLockRegistry()
        self._logger = logging.getLogger("sensorbridge.alert_lifecycle")

    @property
    def mode(self) -> str:
        return self._settings.alert_event_mode

    @property
    def page_limit_max(self) -> int:
        return self._settings.alert_events_page_limit_max

    def hold_rules(self, rule_ids: Iterable[int]):
        """Serialize alert creation for the given rules until the caller commits."""
        return self._rule_locks.hold_many(rule_ids)

    def evaluate(
        self,
        db: Session,
        *,
        rule: Any,
        value: float,
        triggered_at: datetime,
    ) -> AlertEvent | None:
        """Classify ``value`` against ``rule`` and stage an open event when it is not safe.

        The new event is flushed but not committed. Callers that need the
        per-rule guarantee to survive until commit wrap the evaluation and the
        commit in ``hold_rules``.
        """
        if not rule.enabled or rule.rule_type != "threshold":
            return None

        try:
            params = ThresholdParams.from_mapping(rule.params_json)
        except ValueError as exc:
            self._logger.warning("alert rule skipped rule_id=%s reason=%s", rule.id, exc)
            return None

        tier = classify(value, params)
        if tier == SAFE:
            return None

        with self._rule_locks.hold(rule.id):
            if self.mode == "incident":
                existing = find_unresolved_event(db, rule.id)
                if existing is not None:
                    self._logger.debug(
                        "alert incident already unresolved rule_id=%s event_id=%s value=%s",
                        rule.id,
                        existing.id,
                        value,
                    )
                    return None

            event = add_alert_event(
                db,
                alert_rule_id=rule.id,
                triggered_at=triggered_at,
                value=value,
                severity=tier,
            )
        self._logger.info(
            "alert event opened rule_id=%s event_id=%s severity=%s value=%s",
            rule.id,
            event.id,
            tier,
            value,
        )
        return event

    def acknowledge(self, db: Session, event_id: int, *, by: str, note: str | None = None) -> AlertEvent:
        with self._event_lock(db, event_id):
            event = self._load(db, event_id)
            if event.status == STATUS_CLEARED:
                raise InvalidTransition(
                    f"Alert event {event_id} is cleared and cannot be acknowledged",
                    current_status=event.status,
                )
            event.status = STATUS_ACKNOWLEDGED
            event.acknowledged_by = by
            event.acknowledged_at = self._clock()
            if note is not None:
                event.note = note
            return self._commit(db, event, action="acknowledged")

    def clear(self, db: Session, event_id: int, *, by: str, note: str | None = None) -> AlertEvent:
        with self._event_lock(db, event_id):
            event = self._load(db, event_id)
            if event.status == STATUS_CLEARED:
                raise InvalidTransition(
                    f"Alert event {event_id} is already cleared",
                    current_status=event.status,
                )
            event.status = STATUS_CLEARED
            event.cleared_by = by
            event.cleared_at = self._clock()
            if note is not None:
                event.note = note
            return self._commit(db, event, action="cleared")

    def update(self, db: Session, event_id: int, fields: dict[str, Any]) -> AlertEvent:
        with self._event_lock(db, event_id):
            event = self._load(db, event_id)
            if "status" in fields:
                raise InvalidTransition(
                    "Alert event status can only change through acknowledge or clear",
                    current_status=event.status,
                )
            if event.status == STATUS_CLEARED:
                raise InvalidTransition(
                    f"Alert event {event_id} is cleared and can no longer be modified",
                    current_status=event.status,
                )
            unknown = sorted(set(fields) - PATCHABLE_FIELDS)
            if unknown:
                raise ValueError(f"Alert event fields cannot be patched: {', '.join(unknown)}")
            for key, value in fields.items():
                setattr(event, key, value)
            return self._commit(db, event, action="updated")

    def remove(self, db: Session, event_id: int) -> None:
        with self._event_lock(db, event_id):
            event = self._load(db, event_id)
            delete_alert_event(db, event)
        self._logger.info("alert event deleted event_id=%s", event_id)

    def get(self, db: Session, event_id: int) -> AlertEvent:
        return self._load(db, event_id)

    def list_open_events(self, db: Session, *, channel_id: int | None = None) -> list[AlertEvent]:
        return list_open_alert_events(db, channel_id=channel_id)

    def list_events(
        self,
        db: Session,
        *,
        rule_id: int | None = None,
        status: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[AlertEvent], int]:
        if status is not None and status not in EVENT_STATUSES:
            raise ValueError(f"Invalid status filter: {status}")
        if start is not None and end is not None and start > end:
            raise ValueError("start must not be after end")
        limit = max(1, min(limit, self._settings.alert_events_page_limit_max))
        return list_alert_events(
            db,
            rule_id=rule_id,
            status=status,
            start=start,
            end=end,
            page=max(1, page),
            limit=limit,
        )

    @contextmanager
    def _event_lock(self, db: Session, event_id: int) -> Iterator[None]:
        rule_id = get_alert_event_rule_id(db, event_id)
        if rule_id is None:
            raise NotFound("Alert event", event_id)
        with self._rule_locks.hold(rule_id):
            try:
                yield
            except Exception:
                db.rollback()
                raise

    def _load(self, db: Session, event_id: int) -> AlertEvent:
        event = get_alert_event_by_id(db, event_id)
        if event is None:
            raise NotFound("Alert event", event_id)
        db.refresh(event)
        return event

    def _commit(self, db: Session, event: AlertEvent, *, action: str) -> AlertEvent:
        db.add(event)
        db.commit()
        db.refresh(event)
        self._logger.info("alert event %s event_id=%s status=%s", action, event.id, event.status)
        return event
