from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

AlertEventStatus = Literal["open", "acknowledged", "cleared"]


class AlertEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    alert_rule_id: int
    triggered_at: datetime
    value: float
    severity: str
    status: AlertEventStatus
    acknowledged_by: str | None
    acknowledged_at: datetime | None
    cleared_by: str | None
    cleared_at: datetime | None
    note: str | None


class AlertEventPageResponse(BaseModel):
    items: list[AlertEventResponse]
    total: int
    page: int
    limit: int


class AlertTransitionRequest(BaseModel):
    by: str = Field(min_length=1, max_length=128)
    note: str | None = Field(default=None, max_length=4000)

    @field_validator("by", mode="before")
    @classmethod
    def _strip_by(cls, value: str) -> str:
        return value.strip() if isinstance(value, str) else value


class AlertEventPatchRequest(BaseModel):
    # Extra keys are kept so a forbidden "status" patch reaches the lifecycle check.
    model_config = ConfigDict(extra="allow")

    note: str | None = Field(default=None, max_length=4000)

    @model_validator(mode="after")
    def _require_fields(self) -> "AlertEventPatchRequest":
        if not self.model_fields_set and not self.model_extra:
            raise ValueError("At least one field must be provided for update")
        return self

    def changes(self) -> dict[str, object]:
        updates: dict[str, object] = {key: getattr(self, key) for key in self.model_fields_set}
        updates.update(self.model_extra or {})
        return updates
