from __future__ import annotations

from typing import List, Optional


class ConfigurationError(RuntimeError):
    """Deployment problem that operators cannot fix from the UI."""


class RecordNotFoundError(LookupError):
    pass


class RemoteStoreError(RuntimeError):
    """The remote store answered with an error response."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class UnknownFieldError(RemoteStoreError):
    """The remote store rejected a write because a field name does not exist."""

    def __init__(self, field_name: Optional[str], detail: Optional[str] = None) -> None:
        label = f"'{field_name}'" if field_name else "(unnamed)"
        super().__init__(f"Unknown field name {label}", status_code=422, detail=detail)
        self.field_name = field_name


class SchemaMismatchError(RemoteStoreError):
    """Every alias combination for a write was rejected as unknown."""

    def __init__(self, logical_fields: List[str], attempts: List[UnknownFieldError]) -> None:
        names = ", ".join(logical_fields)
        super().__init__(f"No accepted field names for: {names}", status_code=422)
        self.logical_fields = logical_fields
        self.attempts = attempts
