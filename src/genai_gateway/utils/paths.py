# src/genai_gateway/utils/paths.py
"""
Centralized path management for the gateway.

Log files live under `<root>/logs`, where root defaults to the current
working directory and can be overridden per call.
"""

from pathlib import Path
from typing import Optional, Union


def get_default_root() -> Path:
    """Get the default root directory for data files (the working directory)."""
    return Path.cwd()


def get_logs_dir(root: Optional[Union[Path, str]] = None) -> Path:
    """
    Get the logs directory, creating it if needed.

    Args:
        root: Optional root directory. If None, uses get_default_root().
    """
    base = Path(root) if root else get_default_root()
    logs_dir = base / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir
