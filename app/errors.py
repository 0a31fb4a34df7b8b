from __future__ import annotations

from typing import Any, Dict, List, Optional


class ValidationError(ValueError):
    """Raised when input is incomplete or malformed; carries the offending fields."""

    def __init__(self, message: str, fields: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.fields: List[Dict[str, Any]] = list(fields or [])


class ConfigurationError(Exception):
    """Raised when store configuration blocks an operation (e.g. unassigned evaluators)."""

    def __init__(self, message: str, configuration_issues: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.configuration_issues: Dict[str, Any] = dict(configuration_issues or {})


class StateConflict(Exception):
    """Raised when a transition is attempted from the wrong status."""

    def __init__(self, message: str, *, expected: Any = None, actual: Any = None) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class NotFoundError(LookupError):
    pass


class AccessDenied(Exception):
    """Raised when the acting user is not the party allowed to perform a transition."""
