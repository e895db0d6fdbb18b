"""Application-level exception types.

This module defines the error kinds shared by the decision engine, the
storage adapters and the HTTP integration, enabling consistent error
handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep shapes flexible while encouraging
    consistent keys across the codebase.
    """

    code: str
    message: str
    hint: str
    option: str
    value: Any
    backend: str
    operation: str
    key_hash: str
    timeout_s: float
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ConfigError(AppError):
    """Raised when construction-time options are invalid."""


class StorageError(AppError):
    """Raised when a storage backend fails to read, decode or write a record."""


class StorageNotFoundError(StorageError):
    """Raised when updating a record that does not exist."""


class GuardError(AppError):
    """Raised when the decision engine cannot reach a verdict.

    Always chained to the underlying StorageError via ``__cause__``.
    """
