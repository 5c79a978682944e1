"""
Structured error types for valops.

Every failure the reconciler can report is a ``ValopsError`` subclass that
carries a category, a retry hint, structured context (which step, which
principal, which logical id) and the chained lower-level cause. Messages are
written to name the invariant that was not met, e.g. "backup for logical id X
could not be verified; teardown aborted", never a bare "failed".

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                          ValopsError                             │
        │  (category, retryable, context, cause)                           │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ValidationError        InfrastructureError   HealthCheckTimeout │
        │  (VALIDATION, final)    (INFRASTRUCTURE,      (HEALTH,           │
        │                          retryable)            retryable)        │
        │                                                                  │
        │  CredentialError                         BackupObligationUnmet   │
        │  (CREDENTIAL, final)                     (BACKUP)                │
        │     │                                                            │
        │  EncryptionError                         DestructiveOperation-   │
        │  DecryptionError                         Blocked (SAFETY)        │
        │  InvalidSecretFormat                                             │
        └─────────────────────────────────────────────────────────────────┘

Propagation policy:
    Lower-level failures (supervisor commands, the encryption tool, the
    filesystem) are wrapped with context and re-raised. Nothing in valops
    logs-and-ignores a credential or backup error. The only local recovery is
    re-running an idempotent infrastructure step.

Examples:
    >>> err = InfrastructureError("useradd failed").with_context(step="principal", owner="alice")
    >>> err.retryable
    True
    >>> err.to_dict()["context"]
    {'step': 'principal', 'owner': 'alice'}

Tags:
    errors, exception-hierarchy, retry-semantics, error-context, valops
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories for classification and reporting."""

    VALIDATION = "VALIDATION"           # Bad or missing spec fields
    INFRASTRUCTURE = "INFRASTRUCTURE"   # Users, directories, units, locks
    HEALTH = "HEALTH"                   # Readiness never reached
    CREDENTIAL = "CREDENTIAL"           # Encrypt, decrypt, key format
    BACKUP = "BACKUP"                   # Backup obligation not met
    SAFETY = "SAFETY"                   # Destructive action refused
    INTERNAL = "INTERNAL"               # Bugs, unexpected state


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Only the fields relevant to a failure are set; ``to_dict()`` drops the
    rest so log lines stay short.
    """

    step: str | None = None
    service_kind: str | None = None
    owner: str | None = None
    unit: str | None = None
    logical_id: str | None = None
    path: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["step", "service_kind", "owner", "unit", "logical_id", "path"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ValopsError(Exception):
    """
    Base exception for all valops errors.

    Subclasses set ``default_category`` and ``default_retryable``. Callers
    may override both per instance, and attach context fluently::

        raise InfrastructureError("mkdir failed", cause=exc).with_context(
            step="directories", owner=spec.owner, path=str(path)
        )
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ValopsError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# SPEC AND INFRASTRUCTURE
# =============================================================================


class ValidationError(ValopsError):
    """
    A ServiceSpec is incomplete or malformed.

    Never retryable: the declaration has to be fixed. Raised before any side
    effect takes place.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        missing: list[str] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.missing = missing or []

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.missing:
            result["missing"] = list(self.missing)
        return result


class InfrastructureError(ValopsError):
    """
    An OS-level operation failed (user, directory, unit, supervisor, lock).

    Retryable: every infrastructure step is idempotent, so once the operator
    fixes the environment the whole reconciliation can simply be re-run.
    """

    default_category = ErrorCategory.INFRASTRUCTURE
    default_retryable = True


class HealthCheckTimeout(ValopsError):
    """The readiness predicate did not pass before the timeout."""

    default_category = ErrorCategory.HEALTH
    default_retryable = True

    def __init__(
        self,
        message: str,
        *,
        timeout: float | None = None,
        attempts: int = 0,
        last_detail: str = "",
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.timeout = timeout
        self.attempts = attempts
        self.last_detail = last_detail

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["timeout"] = self.timeout
        result["attempts"] = self.attempts
        if self.last_detail:
            result["last_detail"] = self.last_detail
        return result


# =============================================================================
# CREDENTIALS
# =============================================================================


class CredentialError(ValopsError):
    """Base for credential handling failures. Always fatal to the operation."""

    default_category = ErrorCategory.CREDENTIAL
    default_retryable = False


class EncryptionError(CredentialError):
    """No recipient key, encryption tool unavailable, or the tool failed."""


class DecryptionError(CredentialError):
    """Ciphertext is malformed or was not encrypted for this host key."""


class InvalidSecretFormat(CredentialError):
    """Secret material does not have the expected shape (64 lowercase hex)."""


# =============================================================================
# BACKUP GUARD
# =============================================================================


class BackupObligationUnmet(ValopsError):
    """A discovered secret has no verified encrypted backup on disk."""

    default_category = ErrorCategory.BACKUP
    default_retryable = False


class DestructiveOperationBlocked(ValopsError):
    """The backup guard refused; the destructive action was never attempted."""

    default_category = ErrorCategory.SAFETY
    default_retryable = False


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ValopsError",
    "ValidationError",
    "InfrastructureError",
    "HealthCheckTimeout",
    "CredentialError",
    "EncryptionError",
    "DecryptionError",
    "InvalidSecretFormat",
    "BackupObligationUnmet",
    "DestructiveOperationBlocked",
]
