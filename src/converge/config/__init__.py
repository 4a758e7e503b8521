"""
converge configuration.

- Pydantic-based settings (environment variables, .env files)
- Declaration file loading (YAML or JSON)
"""

from converge.config.loader import load_declaration, read_declaration_data
from converge.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "load_declaration",
    "read_declaration_data",
]
