"""
procurement_config -- single public entrypoint for procurement configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration
    files or environment variables directly.

Architecture position:
    Configuration -- YAML-driven settings and org chart.  This package
    sits above ``procurement_kernel`` and below ``procurement_services``.
    The kernel MUST NEVER import from ``procurement_config``; bridges in
    this package translate configuration into kernel inputs.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` / ``KeyError`` -- schema or org chart validation failures.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``PROCUREMENT_CONFIG_TRACE`` log entry containing the source path,
    checksum and org chart size.
"""

from __future__ import annotations

import os
from pathlib import Path

from procurement_config.loader import load_config
from procurement_config.schema import ProcurementConfig
from procurement_kernel.logging_config import get_logger

__all__ = ["CONFIG_ENV_VAR", "ProcurementConfig", "get_active_config"]

_logger = get_logger("config")

_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"
_DEFAULT_CONFIG_FILE = _DEFAULT_CONFIG_DIR / "default.yaml"

CONFIG_ENV_VAR = "PROCUREMENT_CONFIG"


def get_active_config(path: Path | str | None = None) -> ProcurementConfig:
    """
    Load the active configuration.

    The file is, in order: ``path`` when given, the file named by the
    ``PROCUREMENT_CONFIG`` environment variable, or the packaged
    ``sets/default.yaml``.  Nothing is cached; callers hold the returned
    value for as long as they need it.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
        ValueError: If configuration validation fails.
    """
    resolved = Path(path or os.environ.get(CONFIG_ENV_VAR) or _DEFAULT_CONFIG_FILE)
    if not resolved.is_file():
        raise FileNotFoundError(f"Configuration file not found: {resolved}")

    config = load_config(resolved)

    _logger.info(
        "PROCUREMENT_CONFIG_TRACE",
        extra={
            "trace_type": "PROCUREMENT_CONFIG_TRACE",
            "source_path": str(resolved),
            "checksum": config.checksum,
            "user_count": len(config.org_chart.users),
            "dependency_count": len(config.org_chart.dependencies),
            "duplicate_check_enabled": config.settings.duplicate_check.enabled,
        },
    )
    return config
