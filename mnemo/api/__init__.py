"""
mnemo FastAPI Application.

- main: FastAPI application factory and configuration
- routes/: API endpoint definitions organized by domain
- models: Pydantic request models and error envelopes
- dependencies: FastAPI dependency injection providers

API Structure:
- /health - Health check and readiness probes
- /api/v1/memories - Save, search, move, delete, requeue
- /api/v1/status - System status, backend upgrade, reconciliation
- /metrics - Prometheus metrics
"""

from mnemo.api.main import app, create_app

__all__ = ["app", "create_app"]
