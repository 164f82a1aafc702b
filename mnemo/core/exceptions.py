"""
Core exception hierarchy for mnemo.

Every error carries a message plus a details dict for structured logs.
The enrichment pipeline retries anything derived from RetryableError and
gives up immediately on PermanentError.
"""

from typing import Any, Optional


# =============================================================================
# Base Exceptions
# =============================================================================


class MnemoError(Exception):
    """Base exception for all mnemo errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class RetryableError(MnemoError):
    """
    Transient errors that should be retried.

    Examples: unreachable stores, provider timeouts, an open circuit.
    """

    pass


class PermanentError(MnemoError):
    """
    Errors that won't be fixed by retrying.

    Examples: missing configuration, unknown memory ids, an aborted upgrade.
    """

    pass


# =============================================================================
# Initialization Errors
# =============================================================================


class InitializationError(PermanentError):
    """Raised when a critical component fails to initialize."""

    def __init__(self, component: str, message: str, details: Optional[dict[str, Any]] = None):
        self.component = component
        super().__init__(f"[{component}] {message}", details)


# =============================================================================
# Backend Errors
# =============================================================================


class BackendUnreachableError(RetryableError):
    """Raised when a store or model provider cannot be reached or rejects auth."""

    def __init__(
        self,
        backend: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ):
        self.backend = backend
        super().__init__(f"[{backend}] {message}", details)


class StoreWriteError(BackendUnreachableError):
    """Raised when the relational system of record rejects a write."""

    pass


class BackendUpgradeFailedError(PermanentError):
    """Raised internally when an embedded -> networked upgrade aborts.

    The selector converts it into a failed UpgradeResult; the active backend
    is unchanged.
    """

    def __init__(self, step: str, message: str, details: Optional[dict[str, Any]] = None):
        self.step = step
        super().__init__(f"Upgrade failed at {step}: {message}", details)


class MemoryNotFoundError(PermanentError):
    """Raised when a memory id does not exist in the relational store."""

    def __init__(self, memory_id: str):
        self.memory_id = memory_id
        super().__init__(f"Memory {memory_id} not found", {"memory_id": memory_id})


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderResponseInvalidError(RetryableError):
    """Raised when a model provider returns malformed or unexpected output."""

    def __init__(self, provider: str, message: str, details: Optional[dict[str, Any]] = None):
        self.provider = provider
        super().__init__(f"[{provider}] {message}", details)


# =============================================================================
# Consistency Errors
# =============================================================================


class ConsistencyGapError(PermanentError):
    """A memory's per-store index flags still disagree after the retry cap."""

    def __init__(self, memory_id: str, missing_legs: list[str]):
        self.memory_id = memory_id
        self.missing_legs = missing_legs
        super().__init__(
            f"Memory {memory_id} is missing from {', '.join(missing_legs)}",
            {"memory_id": memory_id, "missing_legs": missing_legs},
        )


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(PermanentError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        self.config_key = config_key
        details = {"config_key": config_key} if config_key else None
        super().__init__(message, details)


# =============================================================================
# Circuit Breaker
# =============================================================================


class CircuitBreakerOpenError(BackendUnreachableError):
    """A secondary store is failing fast until its breaker's recovery window ends."""

    def __init__(self, service: str, recovery_time: float):
        self.service = service
        self.recovery_time = recovery_time
        super().__init__(
            service,
            f"circuit open, next attempt in {recovery_time:.1f}s",
            {"recovery_time": recovery_time},
        )
