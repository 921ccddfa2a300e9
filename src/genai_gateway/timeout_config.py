# src/genai_gateway/timeout_config.py
"""
Centralized timeout configuration for upstream HTTP requests.

All values can be overridden via environment variables:
    TIMEOUT_CONNECT - Connection establishment timeout (default: 10s)
    TIMEOUT_READ - Read timeout for a full generateContent response (default: 60s)
    TIMEOUT_WRITE - Request body send timeout (default: 30s)
    TIMEOUT_POOL - Connection pool acquisition timeout (default: 30s)
"""

import os
import logging
from typing import Mapping, Optional

import httpx

lib_logger = logging.getLogger("genai_gateway")


class TimeoutConfig:
    """
    Centralized timeout configuration for upstream requests.

    All values can be overridden via environment variables.
    """

    # Default values (in seconds)
    _CONNECT = 10.0
    _READ = 60.0
    _WRITE = 30.0
    _POOL = 30.0

    @classmethod
    def _get_env_float(
        cls, key: str, default: float, env: Optional[Mapping[str, str]] = None
    ) -> float:
        """Get a float value from environment variable, or return default."""
        env = os.environ if env is None else env
        value = env.get(key)
        if value is not None:
            try:
                return float(value)
            except ValueError:
                lib_logger.warning(
                    f"Invalid value for {key}: {value}. Using default: {default}"
                )
        return default

    @classmethod
    def connect(cls, env: Optional[Mapping[str, str]] = None) -> float:
        """Connection establishment timeout."""
        return cls._get_env_float("TIMEOUT_CONNECT", cls._CONNECT, env)

    @classmethod
    def read(cls, env: Optional[Mapping[str, str]] = None) -> float:
        """Read timeout for the complete upstream response."""
        return cls._get_env_float("TIMEOUT_READ", cls._READ, env)

    @classmethod
    def write(cls, env: Optional[Mapping[str, str]] = None) -> float:
        """Request body send timeout."""
        return cls._get_env_float("TIMEOUT_WRITE", cls._WRITE, env)

    @classmethod
    def pool(cls, env: Optional[Mapping[str, str]] = None) -> float:
        """Connection pool acquisition timeout."""
        return cls._get_env_float("TIMEOUT_POOL", cls._POOL, env)

    @classmethod
    def upstream(cls, env: Optional[Mapping[str, str]] = None) -> httpx.Timeout:
        """
        Timeout configuration for one upstream generateContent call.

        The read timeout bounds the whole response since the upstream
        sends nothing until generation is complete.
        """
        return httpx.Timeout(
            connect=cls.connect(env),
            read=cls.read(env),
            write=cls.write(env),
            pool=cls.pool(env),
        )
