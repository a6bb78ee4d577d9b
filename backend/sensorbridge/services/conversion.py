from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from sensorbridge.services.errors import ConversionError, FormulaValidationError
from sensorbridge.services.formula import (
    DEFAULT_MAX_LENGTH,
    DEFAULT_MAX_NODES,
    DEFAULT_TIMEOUT_MS,
    compile_formula,
)


@dataclass(frozen=True)
class ConversionRule:
    multiplier: float = 1.0
    offset: float = 0.0
    formula: str | None = None

    def describe(self) -> str:
        if self.formula:
            return f"formula={self.formula}"
        return f"linear multiplier={self.multiplier} offset={self.offset}"


IDENTITY_RULE = ConversionRule()


def rule_from_attributes(source: Any) -> ConversionRule | None:
    """Build the rule a channel or sensor type declares, or None when it declares nothing."""
    if source is None:
        return None
    formula = _clean_formula(getattr(source, "conversion_formula", None))
    if formula is not None:
        return ConversionRule(formula=formula)

    multiplier = getattr(source, "multiplier", None)
    offset = getattr(source, "offset_value", None)
    if multiplier is None and offset is None:
        return None
    return ConversionRule(
        multiplier=1.0 if multiplier is None else float(multiplier),
        offset=0.0 if offset is None else float(offset),
    )


def effective_rule(channel: Any, sensor_type: Any = None) -> ConversionRule:
    channel_rule = rule_from_attributes(channel)
    if channel_rule is not None:
        return channel_rule
    type_rule = rule_from_attributes(sensor_type)
    if type_rule is not None:
        return type_rule
    return IDENTITY_RULE


def convert(
    raw: float,
    rule: ConversionRule,
    *,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    max_length: int = DEFAULT_MAX_LENGTH,
    max_nodes: int = DEFAULT_MAX_NODES,
) -> float:
    if not math.isfinite(raw):
        raise ConversionError(f"raw value is not finite: {raw!r}", raw_value=raw)

    if rule.formula:
        try:
            compiled = compile_formula(rule.formula, max_length=max_length, max_nodes=max_nodes)
        except FormulaValidationError as exc:
            raise ConversionError(f"stored formula is invalid: {exc.reason}", raw_value=raw) from exc
        return compiled.evaluate(raw, timeout_ms=timeout_ms)

    try:
        engineered = raw * rule.multiplier + rule.offset
    except (OverflowError, TypeError) as exc:
        raise ConversionError(f"linear conversion failed: {exc}", raw_value=raw) from exc
    if not math.isfinite(engineered):
        raise ConversionError(
            f"linear conversion produced a non-finite result: {engineered!r}",
            raw_value=raw,
        )
    return engineered


def _clean_formula(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None
