from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Literal, Mapping

Classification = Literal["safe", "warning", "critical"]

SAFE: Classification = "safe"
WARNING: Classification = "warning"
CRITICAL: Classification = "critical"


@dataclass(frozen=True)
class ThresholdParams:
    min: float
    warning: float
    critical: float
    max: float

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any]) -> "ThresholdParams":
        values: dict[str, float] = {}
        for key in ("min", "warning", "critical", "max"):
            raw = params.get(key) if isinstance(params, Mapping) else None
            if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not math.isfinite(raw):
                raise ValueError(f"threshold parameter '{key}' must be a finite number")
            values[key] = float(raw)
        return cls(**values)

    def as_dict(self) -> dict[str, float]:
        return {"min": self.min, "warning": self.warning, "critical": self.critical, "max": self.max}


def classify(value: float, params: ThresholdParams) -> Classification:
    # Out of bounds is checked first and wins over the warning band.
    if value < params.min or value > params.max:
        return CRITICAL
    if params.warning <= value <= params.critical:
        return WARNING
    return SAFE
