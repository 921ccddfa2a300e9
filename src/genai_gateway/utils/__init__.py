# src/genai_gateway/utils/__init__.py

from .paths import get_default_root, get_logs_dir

__all__ = [
    "get_default_root",
    "get_logs_dir",
]
