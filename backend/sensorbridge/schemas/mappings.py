from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

MetadataSlot = Literal["timestamp", "device_id", "signal_quality"]
MetadataType = Literal["timestamp", "string", "number"]


def _normalize_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def _validate_payload_path(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("payload_path must not be empty")
    if any(segment.strip() == "" for segment in cleaned.split(".")):
        raise ValueError(f"payload_path '{cleaned}' contains an empty segment")
    return cleaned


class CandidateFieldsRequest(BaseModel):
    payload: dict[str, Any]


class PayloadFieldResponse(BaseModel):
    path: str
    value: Any
    suggested_type: MetadataType


class PayloadSampleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    index: int
    id: int
    device_id: str
    received_at: datetime
    payload: dict[str, Any]


class FormulaValidationRequest(BaseModel):
    formula: str = Field(max_length=4096)


class FormulaValidationResponse(BaseModel):
    ok: bool
    reason: str | None = None
    code: str | None = None
    probe_value: float | None = None
    probe_result: float | None = None


class MetadataTypeSuggestionRequest(BaseModel):
    payload_path: str = Field(min_length=1, max_length=255)


class MetadataTypeSuggestionResponse(BaseModel):
    payload_path: str
    inferred_type: MetadataType


class ChannelMappingEntry(BaseModel):
    payload_path: str = Field(max_length=255)
    conversion_formula: str | None = Field(default=None, max_length=4096)
    multiplier: float | None = None
    offset: float | None = None

    @field_validator("payload_path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        return _validate_payload_path(value)

    @field_validator("conversion_formula", mode="before")
    @classmethod
    def _normalize_formula(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value)


class MetadataMappingEntry(BaseModel):
    payload_path: str = Field(max_length=255)
    inferred_type: MetadataType | None = None

    @field_validator("payload_path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        return _validate_payload_path(value)


class MappingSpecificationRequest(BaseModel):
    channels: dict[str, ChannelMappingEntry] = Field(default_factory=dict)
    metadata: dict[MetadataSlot, MetadataMappingEntry] = Field(default_factory=dict)

    @field_validator("channels")
    @classmethod
    def _check_channel_codes(cls, value: dict[str, ChannelMappingEntry]) -> dict[str, ChannelMappingEntry]:
        for code in value:
            if not code.strip():
                raise ValueError("channel codes must not be empty")
        return value


class ChannelMappingResponse(BaseModel):
    payload_path: str


class MetadataMappingResponse(BaseModel):
    payload_path: str
    inferred_type: MetadataType


class ProfileMappingResponse(BaseModel):
    profile_id: int
    code: str
    name: str
    enabled: bool
    mapping_version: int
    channels: dict[str, ChannelMappingResponse]
    metadata: dict[str, MetadataMappingResponse]
    unbound_channels: list[str]
    updated_at: datetime | None = None
