import re
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

lib_logger = logging.getLogger("genai_gateway")

# Error types produced by classify_error()
RATE_LIMITED = "rate_limited"
AUTH_INVALID = "auth_invalid"
PERMANENT = "permanent"
TRANSPORT = "transport"
UNKNOWN = "unknown"

# Lower-cased substrings observed in upstream error bodies.
# Keep this table in sync with upstream message wording; nothing else
# in the gateway inspects error text.
RATE_LIMIT_SIGNATURES = (
    "resource_exhausted",
    "quota",
    "rate limit",
    "rate_limit",
    "ratelimit",
    "too many requests",
)
AUTH_INVALID_SIGNATURES = (
    "api key not valid",
    "api_key_invalid",
    "invalid api key",
    "api key expired",
    "entity was not found",
)
DAILY_QUOTA_SIGNATURES = (
    "perday",
    "per day",
    "per_day",
)


def _parse_duration_string(duration_str: str) -> Optional[int]:
    """
    Parse duration strings in various formats to total seconds.

    Handles:
    - Compound durations: '1h2m3.5s', '2h30m', '45m30s'
    - Simple durations: '34.5s', '3600s', '60m', '2h'
    - Plain seconds (no unit): '562'

    Returns:
        Total seconds as integer, or None if parsing fails
    """
    if not duration_str:
        return None

    total_seconds = 0
    remaining = duration_str.strip().lower()

    try:
        return int(float(remaining))
    except ValueError:
        pass

    hour_match = re.match(r"(\d+)h", remaining)
    if hour_match:
        total_seconds += int(hour_match.group(1)) * 3600
        remaining = remaining[hour_match.end() :]

    min_match = re.match(r"(\d+)m", remaining)
    if min_match:
        total_seconds += int(min_match.group(1)) * 60
        remaining = remaining[min_match.end() :]

    sec_match = re.match(r"([\d.]+)s", remaining)
    if sec_match:
        total_seconds += int(float(sec_match.group(1)))

    return total_seconds if total_seconds > 0 else None


def _parse_error_body(body: str) -> Dict[str, Any]:
    """
    Extract the `error` object from a Google API error body.

    Returns an empty dict when the body is not the usual
    `{"error": {"code", "message", "status", "details"}}` shape.
    """
    if not body:
        return {}
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return {}
    if isinstance(data, list) and data:
        data = data[0]
    if not isinstance(data, dict):
        return {}
    error = data.get("error")
    return error if isinstance(error, dict) else {}


def _extract_retry_from_error(error: Dict[str, Any]) -> Optional[int]:
    """Retry delay from a google.rpc.RetryInfo detail, if present."""
    for detail in error.get("details") or []:
        if not isinstance(detail, dict):
            continue
        if "google.rpc.RetryInfo" in detail.get("@type", ""):
            delay = detail.get("retryDelay")
            if isinstance(delay, dict):
                seconds = delay.get("seconds")
                if seconds:
                    return int(float(seconds))
            elif isinstance(delay, str):
                result = _parse_duration_string(delay)
                if result is not None:
                    return result
    return None


def get_retry_after(error: Exception) -> Optional[int]:
    """
    Extracts the retry-after duration in seconds from an upstream error.

    Checks the JSON body's RetryInfo first, then the Retry-After header,
    then a "retry in 34s" phrase in the message.
    """
    if isinstance(error, httpx.HTTPStatusError):
        body = error.response.text
        result = _extract_retry_from_error(_parse_error_body(body))
        if result is not None:
            return result

        retry_header = error.response.headers.get("retry-after")
        if retry_header:
            try:
                return int(retry_header)
            except ValueError:
                pass  # HTTP date format, not used upstream
        text = body
    else:
        text = str(error)

    match = re.search(r"retry in\s*([\d.]+)\s*s", text or "", re.IGNORECASE)
    if match:
        return int(float(match.group(1)))
    return None


def mask_credential(credential: str) -> str:
    """
    Mask a credential for safe display in logs and error messages.
    Shows the last 6 characters (e.g. "...xyz123").
    """
    if len(credential) > 6:
        return f"...{credential[-6:]}"
    return "***"


class DispatchError(Exception):
    """
    Terminal failure of one logical dispatch.

    Attributes:
        message: Human-readable message, safe to return to callers
        status_code: Upstream HTTP status if one was observed
        attempts: Number of upstream attempts made
        history: DispatchAttempt records, in order
    """

    error_type = UNKNOWN
    retry_suggested = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        attempts: int = 0,
        history: Optional[List[Any]] = None,
        retry_after: Optional[int] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.attempts = attempts
        self.history = list(history or [])
        self.retry_after = retry_after
        super().__init__(message)


class ConfigurationError(DispatchError):
    """No credentials are available to this process."""

    error_type = "configuration"


class RateLimited(DispatchError):
    """Every attempt hit a quota or rate-limit signal."""

    error_type = RATE_LIMITED
    retry_suggested = True


class AuthInvalid(DispatchError):
    """Upstream rejected the credential itself."""

    error_type = AUTH_INVALID


class PermanentRequestError(DispatchError):
    """Malformed request, unsupported model or operation. Never retried."""

    error_type = PERMANENT


class TransportError(DispatchError):
    """Network failure or timeout talking to upstream."""

    error_type = TRANSPORT
    retry_suggested = True

    def __init__(self, message: str, timed_out: bool = False, **kwargs):
        self.timed_out = timed_out
        super().__init__(message, **kwargs)


class UpstreamError(DispatchError):
    """Failure that matched no known signature."""

    error_type = UNKNOWN


ERROR_CLASSES = {
    RATE_LIMITED: RateLimited,
    AUTH_INVALID: AuthInvalid,
    PERMANENT: PermanentRequestError,
    TRANSPORT: TransportError,
    UNKNOWN: UpstreamError,
}


class ClassifiedError:
    """A structured representation of a classified upstream error."""

    def __init__(
        self,
        error_type: str,
        original_exception: Exception,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
        message: str = "",
        quota_exceeded: bool = False,
        timed_out: bool = False,
    ):
        self.error_type = error_type
        self.original_exception = original_exception
        self.status_code = status_code
        self.retry_after = retry_after
        self.message = message or str(original_exception).split("\n")[0]
        # Daily quota, or no hint that the limit resets soon
        self.quota_exceeded = quota_exceeded
        self.timed_out = timed_out

    def to_exception(
        self, attempts: int = 0, history: Optional[List[Any]] = None
    ) -> DispatchError:
        """Build the terminal DispatchError for this classification."""
        kwargs = dict(
            status_code=self.status_code,
            attempts=attempts,
            history=history,
            retry_after=self.retry_after,
        )
        if self.error_type == TRANSPORT:
            return TransportError(self.message, timed_out=self.timed_out, **kwargs)
        return ERROR_CLASSES[self.error_type](self.message, **kwargs)

    def __str__(self):
        parts = [
            f"type={self.error_type}",
            f"status={self.status_code}",
            f"retry_after={self.retry_after}",
        ]
        if self.quota_exceeded:
            parts.append("quota_exceeded=True")
        parts.append(f"original_exc={self.original_exception!r}")
        return f"ClassifiedError({', '.join(parts)})"


def _classify_rate_limit(
    e: Exception, status_code: Optional[int], text: str, message: str
) -> ClassifiedError:
    retry_after = get_retry_after(e)
    daily = any(sig in text for sig in DAILY_QUOTA_SIGNATURES)
    return ClassifiedError(
        error_type=RATE_LIMITED,
        original_exception=e,
        status_code=status_code or 429,
        retry_after=retry_after,
        message=message,
        quota_exceeded=daily or retry_after is None,
    )


def classify_error(e: Exception) -> ClassifiedError:
    """
    Classifies an exception into a structured ClassifiedError object.

    This is the single translation point from upstream error shapes to the
    gateway's taxonomy:
    - rate_limited (429, quota, RESOURCE_EXHAUSTED): cooldown + rotate
    - auth_invalid (401/403, invalid key, entity not found): rotate, no cooldown
    - permanent (other 4xx): fail immediately
    - transport (timeouts, connection failures): fail unless retry opted in
    - unknown (5xx, anything else): fail unless retry opted in
    """
    if isinstance(e, httpx.TimeoutException):
        return ClassifiedError(
            error_type=TRANSPORT,
            original_exception=e,
            message=f"Upstream request timed out: {e.__class__.__name__}",
            timed_out=True,
        )

    if isinstance(e, httpx.TransportError):
        return ClassifiedError(
            error_type=TRANSPORT,
            original_exception=e,
            message=f"Upstream connection failed: {e.__class__.__name__}",
        )

    if isinstance(e, httpx.HTTPStatusError):
        status_code = e.response.status_code
        body = e.response.text or ""
        error = _parse_error_body(body)
        message = error.get("message") or f"Upstream returned HTTP {status_code}"
        status_name = str(error.get("status") or "").lower()
        text = body.lower()

        if (
            status_code == 429
            or status_name == "resource_exhausted"
            or any(sig in text for sig in RATE_LIMIT_SIGNATURES)
        ):
            return _classify_rate_limit(e, status_code, text, message)

        if status_code in (401, 403) or any(
            sig in text for sig in AUTH_INVALID_SIGNATURES
        ):
            return ClassifiedError(
                error_type=AUTH_INVALID,
                original_exception=e,
                status_code=status_code,
                message=message,
            )

        if 400 <= status_code < 500:
            return ClassifiedError(
                error_type=PERMANENT,
                original_exception=e,
                status_code=status_code,
                message=message,
            )

        return ClassifiedError(
            error_type=UNKNOWN,
            original_exception=e,
            status_code=status_code,
            message=message,
        )

    if isinstance(e, DispatchError):
        return ClassifiedError(
            error_type=e.error_type if e.error_type in ERROR_CLASSES else UNKNOWN,
            original_exception=e,
            status_code=e.status_code,
            retry_after=e.retry_after,
            message=e.message,
        )

    # SDK-style or socket errors only carry text
    text = str(e).lower()
    status_code = getattr(e, "status_code", None) or getattr(e, "status", None)
    if not isinstance(status_code, int):
        status_code = None

    if status_code == 429 or any(sig in text for sig in RATE_LIMIT_SIGNATURES):
        return _classify_rate_limit(e, status_code, text, str(e).split("\n")[0])

    if status_code in (401, 403) or any(sig in text for sig in AUTH_INVALID_SIGNATURES):
        return ClassifiedError(
            error_type=AUTH_INVALID, original_exception=e, status_code=status_code
        )

    if status_code is not None and 400 <= status_code < 500:
        return ClassifiedError(
            error_type=PERMANENT, original_exception=e, status_code=status_code
        )

    return ClassifiedError(
        error_type=UNKNOWN, original_exception=e, status_code=status_code
    )
