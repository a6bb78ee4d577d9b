from __future__ import annotations


class NotFound(LookupError):
    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidTransition(RuntimeError):
    def __init__(self, detail: str, *, current_status: str | None = None):
        self.detail = detail
        self.current_status = current_status
        super().__init__(detail)


class FormulaValidationError(ValueError):
    """Rejected formula; ``reason`` is meant to be shown to the operator as is."""

    def __init__(self, reason: str, *, code: str, formula: str | None = None):
        self.reason = reason
        self.code = code
        self.formula = formula
        super().__init__(reason)


class ConversionError(ArithmeticError):
    def __init__(self, detail: str, *, raw_value: float | None = None):
        self.detail = detail
        self.raw_value = raw_value
        super().__init__(detail)


class MissingField(KeyError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(path)

    def __str__(self) -> str:
        return f"value not found at path: {self.path}"


class IngestAborted(RuntimeError):
    pass
