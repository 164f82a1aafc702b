"""
Configuration Management.

Configuration sources (in order of precedence):
1. Environment variables
2. .env file
3. Default values

All sensitive values (API keys, passwords) are loaded from environment
variables and never committed to source control.

Example:
    from mnemo.config import get_settings

    settings = get_settings()
    container = DependencyContainer(settings)
"""

from mnemo.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
