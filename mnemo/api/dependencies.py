"""FastAPI dependency injection providers.

This module provides dependency functions for injecting the container and
the orchestrator into route handlers.
"""

from typing import Optional

from mnemo.core.container import DependencyContainer
from mnemo.services.orchestrator import MemoryOrchestrator

# Global instance for singleton pattern
_container_instance: Optional[DependencyContainer] = None


def get_container() -> DependencyContainer:
    """
    Get the DependencyContainer instance.

    Returns the global container that is initialized on startup.

    Raises:
        RuntimeError: If the container has not been initialized.
    """
    if _container_instance is None or not _container_instance.is_initialized:
        raise RuntimeError(
            "Container not initialized. Ensure the application startup event has run."
        )
    return _container_instance


def get_orchestrator() -> MemoryOrchestrator:
    return get_container().orchestrator


def peek_container() -> Optional[DependencyContainer]:
    """The container if one was set, initialized or not."""
    return _container_instance


def set_container(container: DependencyContainer) -> None:
    """
    Set the global container instance.

    Called during application startup, or by tests before sending requests.
    """
    global _container_instance
    _container_instance = container


def reset_dependencies() -> None:
    """
    Reset all global dependency instances.

    Useful for testing or application shutdown.
    """
    global _container_instance
    _container_instance = None
