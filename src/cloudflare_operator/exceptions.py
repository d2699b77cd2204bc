"""Error taxonomy shared by the store, the Cloudflare client and the reconcilers."""

from __future__ import annotations

from enum import Enum
from typing import Any

from .constants import (
    REASON_API_ERROR,
    REASON_CONFLICT_RETRIES_EXHAUSTED,
    REASON_INVALID_CONFIG,
    REASON_NOT_FOUND,
    REASON_OWNERSHIP_CONFLICT,
    REASON_SECRET_MATERIAL_LOST,
    REASON_TRANSIENT,
)


class ErrorClass(Enum):
    """Coarse classification used at remote call sites."""

    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    OTHER = "Other"


class OperatorError(Exception):
    """Base class for all operator errors."""


class NotFoundError(OperatorError):
    """The addressed object or remote resource does not exist."""


class ConflictVersionError(OperatorError):
    """An optimistic-concurrency write lost against a concurrent writer."""


class AlreadyExistsError(OperatorError):
    """A create collided with an existing object of the same name."""


class ValidationError(OperatorError):
    """Desired state is malformed. Retrying will not help."""


class TransientError(OperatorError):
    """Network failure, timeout, rate limit or server error."""


class RetryExhaustedError(OperatorError):
    """Every optimistic-concurrency attempt hit a version conflict."""

    def __init__(self, attempts: int, last_error: Exception | None) -> None:
        super().__init__(f"update failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class SecretMaterialLostError(OperatorError):
    """The remote resource exists but its once-only secret material was never stored."""

    def __init__(self, resource_name: str, external_id: str | None = None) -> None:
        message = (
            f"remote resource {resource_name!r} exists but no stored credentials were found; "
            "credentials can only be issued at creation time, manual intervention is required"
        )
        super().__init__(message)
        self.resource_name = resource_name
        self.external_id = external_id


class OwnershipConflictError(OperatorError):
    """A shared remote record is owned by another resource."""

    def __init__(self, record: str, owner: Any, claimant: Any) -> None:
        super().__init__(f"{record} is owned by {owner}, refusing write from {claimant}")
        self.record = record
        self.owner = owner
        self.claimant = claimant


def classify(error: Exception) -> ErrorClass:
    """Classify an error into NotFound, Conflict or Other."""
    if isinstance(error, NotFoundError):
        return ErrorClass.NOT_FOUND
    if isinstance(error, (AlreadyExistsError, ConflictVersionError)):
        return ErrorClass.CONFLICT
    return ErrorClass.OTHER


def is_terminal(error: Exception) -> bool:
    """Return True when retrying the reconcile cannot resolve the error."""
    return isinstance(error, (ValidationError, SecretMaterialLostError, OwnershipConflictError))


def reason_for(error: Exception) -> str:
    """Stable condition reason code for an error."""
    if isinstance(error, ValidationError):
        return REASON_INVALID_CONFIG
    if isinstance(error, SecretMaterialLostError):
        return REASON_SECRET_MATERIAL_LOST
    if isinstance(error, OwnershipConflictError):
        return REASON_OWNERSHIP_CONFLICT
    if isinstance(error, RetryExhaustedError):
        return REASON_CONFLICT_RETRIES_EXHAUSTED
    if isinstance(error, NotFoundError):
        return REASON_NOT_FOUND
    if isinstance(error, TransientError):
        return REASON_TRANSIENT
    return REASON_API_ERROR
