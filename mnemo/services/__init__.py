"""Caller-facing services."""

from mnemo.services.orchestrator import MemoryOrchestrator

__all__ = ["MemoryOrchestrator"]
