from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

from sensorbridge.services.payload_parser import (
    DEVICE_ID_FALLBACK_KEYS,
    TIMESTAMP_FALLBACK_KEYS,
    coerce_number,
    coerce_timestamp,
    lookup_first,
    lookup_path,
    to_utc,
)

METADATA_SLOT_TIMESTAMP = "timestamp"
METADATA_SLOT_DEVICE_ID = "device_id"
METADATA_SLOT_SIGNAL_QUALITY = "signal_quality"
METADATA_SLOTS = (METADATA_SLOT_TIMESTAMP, METADATA_SLOT_DEVICE_ID, METADATA_SLOT_SIGNAL_QUALITY)
METADATA_TYPES = ("timestamp", "string", "number")

_TIMESTAMP_HINTS = ("time", "date")
_STRING_HINTS = ("id", "device", "identifier")
_NUMBER_HINTS = ("rssi", "snr", "signal", "quality")


class _Absent:
    __slots__ = ()

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT: Any = _Absent()


@dataclass(frozen=True)
class ChannelBinding:
    channel_code: str
    payload_path: str


@dataclass(frozen=True)
class MetadataBinding:
    slot: str
    payload_path: str
    inferred_type: str


@dataclass(frozen=True)
class MappingSnapshot:
    """One immutable version of a profile's mapping document."""

    profile_id: int | None
    version: int
    channels: tuple[ChannelBinding, ...] = ()
    metadata: tuple[MetadataBinding, ...] = ()

    @classmethod
    def from_document(
        cls,
        document: Mapping[str, Any] | None,
        *,
        profile_id: int | None = None,
        version: int = 0,
    ) -> "MappingSnapshot":
        document = document if isinstance(document, Mapping) else {}
        channels: list[ChannelBinding] = []
        raw_channels = document.get("channels")
        if isinstance(raw_channels, Mapping):
            for code, entry in raw_channels.items():
                path = _entry_path(entry)
                if isinstance(code, str) and path is not None:
                    channels.append(ChannelBinding(channel_code=code, payload_path=path))

        metadata: list[MetadataBinding] = []
        raw_metadata = document.get("metadata")
        if isinstance(raw_metadata, Mapping):
            for slot, entry in raw_metadata.items():
                path = _entry_path(entry)
                if slot not in METADATA_SLOTS or path is None:
                    continue
                inferred_type = entry.get("inferred_type")
                if inferred_type not in METADATA_TYPES:
                    inferred_type = infer_metadata_type(path)
                metadata.append(MetadataBinding(slot=slot, payload_path=path, inferred_type=inferred_type))

        return cls(
            profile_id=profile_id,
            version=version,
            channels=tuple(sorted(channels, key=lambda item: item.channel_code)),
            metadata=tuple(sorted(metadata, key=lambda item: item.slot)),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "channels": {
                binding.channel_code: {"payload_path": binding.payload_path} for binding in self.channels
            },
            "metadata": {
                binding.slot: {
                    "payload_path": binding.payload_path,
                    "inferred_type": binding.inferred_type,
                }
                for binding in self.metadata
            },
        }

    def metadata_binding(self, slot: str) -> MetadataBinding | None:
        for binding in self.metadata:
            if binding.slot == slot:
                return binding
        return None


@dataclass(frozen=True)
class ResolvedPayload:
    channel_values: Mapping[str, Any] = field(default_factory=dict)
    metadata_values: Mapping[str, Any] = field(default_factory=dict)

    def channel_value(self, channel_code: str) -> Any:
        return self.channel_values.get(channel_code, ABSENT)

    def metadata_value(self, slot: str) -> Any:
        return self.metadata_values.get(slot, ABSENT)


@dataclass(frozen=True)
class PayloadMetadata:
    ts: datetime
    device_id: str | None
    signal_quality: float | None
    timestamp_source: str


def resolve_path(payload: object, path: str) -> Any:
    found, value = lookup_path(payload, path)
    return value if found else ABSENT


def resolve(snapshot: MappingSnapshot, payload: object) -> ResolvedPayload:
    channel_values = {
        binding.channel_code: resolve_path(payload, binding.payload_path) for binding in snapshot.channels
    }
    metadata_values = {
        binding.slot: resolve_path(payload, binding.payload_path) for binding in snapshot.metadata
    }
    return ResolvedPayload(
        channel_values=MappingProxyType(channel_values),
        metadata_values=MappingProxyType(metadata_values),
    )


def infer_metadata_type(path: str) -> str:
    lowered = path.lower()
    if any(hint in lowered for hint in _TIMESTAMP_HINTS):
        return "timestamp"
    if any(hint in lowered for hint in _STRING_HINTS):
        return "string"
    if any(hint in lowered for hint in _NUMBER_HINTS):
        return "number"
    return "string"


def interpret_metadata(
    snapshot: MappingSnapshot,
    resolved: ResolvedPayload,
    payload: object,
    *,
    arrived_at: datetime,
) -> PayloadMetadata:
    """Turn resolved metadata slots into typed values, falling back to well-known keys."""
    ts: datetime | None = None
    timestamp_source = "arrived_at"
    timestamp_binding = snapshot.metadata_binding(METADATA_SLOT_TIMESTAMP)
    if timestamp_binding is not None:
        raw_ts = resolved.metadata_value(METADATA_SLOT_TIMESTAMP)
        ts = None if raw_ts is ABSENT else coerce_timestamp(raw_ts)
        if ts is not None:
            timestamp_source = timestamp_binding.payload_path
    else:
        key, raw = lookup_first(payload, TIMESTAMP_FALLBACK_KEYS)
        ts = coerce_timestamp(raw)
        if ts is not None and key is not None:
            timestamp_source = key
    if ts is None:
        ts = to_utc(arrived_at)

    device_id: str | None = None
    if snapshot.metadata_binding(METADATA_SLOT_DEVICE_ID) is not None:
        device_id = _as_text(resolved.metadata_value(METADATA_SLOT_DEVICE_ID))
    else:
        _key, raw = lookup_first(payload, DEVICE_ID_FALLBACK_KEYS)
        device_id = _as_text(raw)

    signal_quality: float | None = None
    if snapshot.metadata_binding(METADATA_SLOT_SIGNAL_QUALITY) is not None:
        raw_quality = resolved.metadata_value(METADATA_SLOT_SIGNAL_QUALITY)
        signal_quality = None if raw_quality is ABSENT else coerce_number(raw_quality)

    return PayloadMetadata(
        ts=ts,
        device_id=device_id,
        signal_quality=signal_quality,
        timestamp_source=timestamp_source,
    )


def _entry_path(entry: object) -> str | None:
    if not isinstance(entry, Mapping):
        return None
    path = entry.get("payload_path")
    if not isinstance(path, str) or not path.strip():
        return None
    return path.strip()


def _as_text(value: object) -> str | None:
    if value is ABSENT or value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None
