from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

PATH_SEPARATOR = "."
# Epoch values above this are taken as milliseconds (1e10 s is in the year 2286).
_EPOCH_MILLIS_THRESHOLD = 10_000_000_000

TIMESTAMP_FALLBACK_KEYS = ("timestamp", "ts", "time", "datetime")
DEVICE_ID_FALLBACK_KEYS = ("device_id", "deviceId", "dev_eui", "devEui", "node_id", "nodeId")


@dataclass(frozen=True)
class PayloadField:
    path: str
    value: Any


def flatten(payload: object) -> list[PayloadField]:
    """List every addressable leaf of a parsed JSON document.

    Only dicts are descended into. Lists and scalars are leaves and are
    reported whole, never element by element. Keys containing the path
    separator cannot be addressed by a dot path and are skipped. The result
    is ordered by path, so two documents that differ only in key order
    flatten identically.
    """
    if not isinstance(payload, dict):
        return []
    fields: list[PayloadField] = []
    _collect(payload, prefix="", out=fields)
    fields.sort(key=lambda item: item.path)
    return fields


def _collect(node: dict, *, prefix: str, out: list[PayloadField]) -> None:
    for key, value in node.items():
        if not isinstance(key, str) or key == "" or PATH_SEPARATOR in key:
            continue
        path = f"{prefix}{PATH_SEPARATOR}{key}" if prefix else key
        if isinstance(value, dict):
            _collect(value, prefix=path, out=out)
        else:
            out.append(PayloadField(path=path, value=value))


def lookup_path(payload: object, path: str | None) -> tuple[bool, Any]:
    if not path:
        return False, None

    current: object = payload
    for part in path.split(PATH_SEPARATOR):
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


def lookup_first(payload: object, keys: tuple[str, ...]) -> tuple[str | None, Any]:
    for key in keys:
        found, value = lookup_path(payload, key)
        if found and value is not None:
            return key, value
    return None, None


def coerce_number(value: object) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        try:
            numeric = float(value)
        except OverflowError:
            return None
        return numeric if math.isfinite(numeric) else None
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return None
        try:
            numeric = float(raw)
        except ValueError:
            return None
        return numeric if math.isfinite(numeric) else None
    return None


def coerce_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return to_utc(value)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return _epoch_to_datetime(float(value))
        except OverflowError:
            return None

    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return None
        try:
            numeric = float(raw)
        except ValueError:
            numeric = None
        if numeric is not None:
            return _epoch_to_datetime(numeric)
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        return to_utc(parsed)

    return None


def _epoch_to_datetime(value: float) -> datetime | None:
    if not math.isfinite(value):
        return None
    try:
        seconds = value / 1000.0 if abs(value) > _EPOCH_MILLIS_THRESHOLD else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
