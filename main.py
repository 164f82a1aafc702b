"""
mnemo - Main Entry Point

Runs the operator HTTP surface. The application itself (container
lifecycle, routes, metrics) lives in ``mnemo.api.main``.
"""

import structlog
import uvicorn

from mnemo.config import get_settings
from mnemo.core.logging_config import configure_logging

logger = structlog.get_logger(__name__)


def main():
    """Main entry point for running the application."""
    settings = get_settings()
    configure_logging(settings)

    logger.info(
        "starting_server",
        host=settings.api_host,
        port=settings.api_port,
        environment=settings.app_env,
    )

    uvicorn.run(
        "mnemo.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development and settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
