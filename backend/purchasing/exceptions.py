"""
Error taxonomy for the purchasing engine.

Services raise these; the REST layer maps them to status codes in one place.
Nothing is persisted when one of them escapes an operation.
"""
from __future__ import annotations

from typing import Dict, Optional


class EngineError(Exception):
    """Raised when a purchasing operation fails."""

    def __init__(self, message: str, code: str = "purchasing_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(EngineError):
    """User-correctable input problem. Carries per-field messages."""

    def __init__(
        self,
        message: str,
        errors: Optional[Dict[str, str]] = None,
        code: str = "validation_error",
    ):
        self.errors = dict(errors or {})
        super().__init__(message, code=code)


class ConflictError(EngineError):
    """The document changed underneath the caller or a guard forbids the transition."""

    def __init__(self, message: str, code: str = "conflict"):
        super().__init__(message, code=code)


class ConfigurationError(EngineError):
    """Status catalog or workflow configuration is incomplete."""

    def __init__(self, message: str, code: str = "configuration_error"):
        super().__init__(message, code=code)


class NotFoundError(EngineError):
    def __init__(self, message: str, code: str = "not_found"):
        super().__init__(message, code=code)
