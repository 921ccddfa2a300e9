"""
Gateway configuration.

Every retry count, cooldown window and selection policy that used to differ
between deployments is a field here, read once from the environment.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

import httpx

from .timeout_config import TimeoutConfig

lib_logger = logging.getLogger("genai_gateway")

DEFAULT_UPSTREAM_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_LIVE_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)

DEFAULT_TEXT_MODEL = "gemini-3-pro-preview"
DEFAULT_TTS_MODEL = "gemini-2.5-flash-preview-tts"
DEFAULT_LIVE_MODEL = "gemini-2.5-flash-native-audio-preview-12-2025"

SELECTION_POLICIES = ("round_robin", "random")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _get_int(env: Mapping[str, str], key: str, default: int, minimum: int) -> int:
    value = env.get(key)
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except ValueError:
        lib_logger.warning(f"Invalid value for {key}: {value}. Using default: {default}")
        return default
    if parsed < minimum:
        lib_logger.warning(
            f"Invalid value for {key}: {value}. Must be >= {minimum}. Using default: {default}"
        )
        return default
    return parsed


def _get_float(env: Mapping[str, str], key: str, default: float) -> float:
    value = env.get(key)
    if value is None or value == "":
        return default
    try:
        parsed = float(value)
    except ValueError:
        lib_logger.warning(f"Invalid value for {key}: {value}. Using default: {default}")
        return default
    if parsed < 0:
        lib_logger.warning(f"Invalid value for {key}: {value}. Using default: {default}")
        return default
    return parsed


def _get_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    value = env.get(key)
    if value is None or value == "":
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    lib_logger.warning(f"Invalid value for {key}: {value}. Using default: {default}")
    return default


@dataclass
class GatewayConfig:
    """Tunables for the credential pool, dispatcher, relay and live sessions."""

    credential_env: str = "GOOGLE_GENAI_TOKEN"
    max_credential_index: int = 500
    cooldown_seconds: float = 300.0
    rate_limit_cooldown_seconds: float = 60.0
    retry_ceiling: int = 12
    min_attempts: int = 3
    selection_policy: str = "round_robin"
    retry_transport: bool = False
    retry_unknown: bool = False
    upstream_base_url: str = DEFAULT_UPSTREAM_BASE_URL
    api_version: str = "v1beta"
    live_url: str = DEFAULT_LIVE_URL
    live_connect_timeout: float = 12.0
    default_model: str = "gemini-3-flash-preview"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    timeout: httpx.Timeout = field(default_factory=TimeoutConfig.upstream)

    def __post_init__(self):
        if self.selection_policy not in SELECTION_POLICIES:
            raise ValueError(
                f"Unknown selection policy '{self.selection_policy}'. "
                f"Expected one of: {', '.join(SELECTION_POLICIES)}"
            )

    def max_attempts(self, pool_size: int) -> int:
        """Small pools still get `min_attempts`; large pools are capped."""
        return min(self.retry_ceiling, max(self.min_attempts, pool_size))

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "GatewayConfig":
        env = os.environ if env is None else env

        policy = env.get("GENAI_SELECTION_POLICY", "round_robin").strip().lower()
        policy = policy.replace("-", "_")
        if policy not in SELECTION_POLICIES:
            lib_logger.warning(
                f"Invalid value for GENAI_SELECTION_POLICY: {policy}. Using default: round_robin"
            )
            policy = "round_robin"

        origins = [
            origin.strip()
            for origin in env.get("RELAY_CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ] or ["*"]

        return cls(
            credential_env=env.get("GENAI_CREDENTIAL_ENV", "").strip()
            or "GOOGLE_GENAI_TOKEN",
            max_credential_index=_get_int(env, "GENAI_CREDENTIAL_MAX_INDEX", 500, 0),
            cooldown_seconds=_get_float(env, "GENAI_COOLDOWN_SECONDS", 300.0),
            rate_limit_cooldown_seconds=_get_float(
                env, "GENAI_RATE_LIMIT_COOLDOWN_SECONDS", 60.0
            ),
            retry_ceiling=_get_int(env, "GENAI_RETRY_CEILING", 12, 1),
            min_attempts=_get_int(env, "GENAI_MIN_ATTEMPTS", 3, 1),
            selection_policy=policy,
            retry_transport=_get_bool(env, "GENAI_RETRY_TRANSPORT", False),
            retry_unknown=_get_bool(env, "GENAI_RETRY_UNKNOWN", False),
            upstream_base_url=env.get("GENAI_UPSTREAM_BASE_URL", "").strip()
            or DEFAULT_UPSTREAM_BASE_URL,
            api_version=env.get("GENAI_API_VERSION", "").strip() or "v1beta",
            live_url=env.get("GENAI_LIVE_URL", "").strip() or DEFAULT_LIVE_URL,
            live_connect_timeout=_get_float(env, "GENAI_LIVE_CONNECT_TIMEOUT", 12.0),
            default_model=env.get("GENAI_DEFAULT_MODEL", "").strip()
            or "gemini-3-flash-preview",
            cors_origins=origins,
            timeout=TimeoutConfig.upstream(env),
        )
