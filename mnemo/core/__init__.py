"""
Core infrastructure modules for mnemo.

Provides common utilities used across the application:
- exceptions: Standardized exception hierarchy
- circuit_breaker: Resilience pattern for the vector and graph stores
- container: Wiring and lifecycle of every component
"""

from mnemo.core.exceptions import (
    BackendUnreachableError,
    BackendUpgradeFailedError,
    CircuitBreakerOpenError,
    ConfigurationError,
    ConsistencyGapError,
    InitializationError,
    MemoryNotFoundError,
    MnemoError,
    PermanentError,
    ProviderResponseInvalidError,
    RetryableError,
    StoreWriteError,
)

from mnemo.core.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
    get_circuit_breaker,
    reset_all_circuit_breakers,
)

from mnemo.core.container import DependencyContainer
