"""
Declaration file loading.

Declarations are YAML (or JSON, which YAML parses as well) documents in the
nested-mapping form understood by ``parse_declaration``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml

from converge.core.errors import ConfigurationError
from converge.declaration import DEFAULT_MARKER, Declaration, parse_declaration

logger = structlog.get_logger()


def read_declaration_data(path: str | Path) -> dict[str, Any]:
    """Read the raw mapping stored in a declaration file."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Declaration file not found: {path}", details={"path": str(path)})

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Cannot parse declaration file {path}: {e}", details={"path": str(path)}) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Declaration file {path} must contain a mapping",
            details={"path": str(path), "type": type(data).__name__},
        )
    logger.debug("loaded_declaration", path=str(path), collections=list(data))
    return data


def load_declaration(path: str | Path, *, marker: str = DEFAULT_MARKER) -> Declaration:
    """Load and parse a declaration file."""
    return parse_declaration(read_declaration_data(path), marker=marker)
