from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

RuleSeverity = Literal["info", "warning", "error", "critical"]
RuleType = Literal["threshold"]


def _normalize_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


class ProfileCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=128)
    enabled: bool = True

    @field_validator("code", "name", mode="before")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip() if isinstance(value, str) else value


class ProfileUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    enabled: bool | None = None

    @model_validator(mode="after")
    def _require_fields(self) -> "ProfileUpdateRequest":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided for update")
        return self


class ProfileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    name: str
    enabled: bool
    mapping_version: int
    created_at: datetime
    updated_at: datetime


class DeviceCreateRequest(BaseModel):
    device_id: str = Field(min_length=1, max_length=128)
    profile_id: int | None = Field(default=None, ge=1)
    enabled: bool = True


class DeviceUpdateRequest(BaseModel):
    profile_id: int | None = Field(default=None, ge=1)
    enabled: bool | None = None


class DeviceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    device_id: str
    profile_id: int | None
    enabled: bool
    last_seen_at: datetime | None


class SensorTypeCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=128)
    unit: str | None = Field(default=None, max_length=32)
    conversion_formula: str | None = Field(default=None, max_length=4096)
    multiplier: float = 1.0
    offset: float = 0.0

    @field_validator("unit", "conversion_formula", mode="before")
    @classmethod
    def _normalize_text_fields(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value)


class SensorTypeUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    unit: str | None = Field(default=None, max_length=32)
    conversion_formula: str | None = Field(default=None, max_length=4096)
    multiplier: float | None = None
    offset: float | None = None

    @field_validator("unit", "conversion_formula", mode="before")
    @classmethod
    def _normalize_text_fields(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value)


class SensorTypeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    name: str
    unit: str | None
    conversion_formula: str | None
    multiplier: float
    offset: float = Field(validation_alias="offset_value")
    created_at: datetime


class ChannelCreateRequest(BaseModel):
    profile_id: int = Field(ge=1)
    metric_code: str = Field(min_length=1, max_length=64)
    sensor_type_id: int | None = Field(default=None, ge=1)
    unit: str | None = Field(default=None, max_length=32)
    min_threshold: float | None = None
    max_threshold: float | None = None
    conversion_formula: str | None = Field(default=None, max_length=4096)
    multiplier: float | None = None
    offset: float | None = None

    @field_validator("unit", "conversion_formula", mode="before")
    @classmethod
    def _normalize_text_fields(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "ChannelCreateRequest":
        _check_threshold_order(self.min_threshold, self.max_threshold)
        return self


class ChannelUpdateRequest(BaseModel):
    sensor_type_id: int | None = Field(default=None, ge=1)
    unit: str | None = Field(default=None, max_length=32)
    min_threshold: float | None = None
    max_threshold: float | None = None
    conversion_formula: str | None = Field(default=None, max_length=4096)
    multiplier: float | None = None
    offset: float | None = None

    @field_validator("unit", "conversion_formula", mode="before")
    @classmethod
    def _normalize_text_fields(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "ChannelUpdateRequest":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided for update")
        _check_threshold_order(self.min_threshold, self.max_threshold)
        return self


class ChannelResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    profile_id: int
    metric_code: str
    sensor_type_id: int | None
    unit: str | None
    min_threshold: float | None
    max_threshold: float | None
    conversion_formula: str | None
    multiplier: float | None
    offset: float | None = Field(default=None, validation_alias="offset_value")


class ThresholdParamsModel(BaseModel):
    min: float
    warning: float
    critical: float
    max: float

    @model_validator(mode="after")
    def _check_values(self) -> "ThresholdParamsModel":
        for key in ("min", "warning", "critical", "max"):
            if not math.isfinite(getattr(self, key)):
                raise ValueError(f"threshold parameter '{key}' must be finite")
        if self.min > self.max:
            raise ValueError("min must not be greater than max")
        return self


class AlertRuleCreateRequest(BaseModel):
    sensor_channel_id: int = Field(ge=1)
    rule_type: RuleType = "threshold"
    severity: RuleSeverity = "warning"
    params: ThresholdParamsModel
    enabled: bool = True


class AlertRuleUpdateRequest(BaseModel):
    severity: RuleSeverity | None = None
    params: ThresholdParamsModel | None = None
    enabled: bool | None = None

    @model_validator(mode="after")
    def _require_fields(self) -> "AlertRuleUpdateRequest":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided for update")
        if "enabled" in self.model_fields_set and self.enabled is None:
            raise ValueError("enabled must be true or false")
        return self


class AlertRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sensor_channel_id: int
    rule_type: str
    severity: str
    params: dict[str, Any] = Field(validation_alias="params_json")
    enabled: bool
    created_at: datetime
    updated_at: datetime


def _check_threshold_order(minimum: float | None, maximum: float | None) -> None:
    if minimum is not None and maximum is not None and minimum > maximum:
        raise ValueError("min_threshold must not be greater than max_threshold")
