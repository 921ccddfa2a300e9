import logging
import json
from logging.handlers import RotatingFileHandler
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Union

from .error_handler import ClassifiedError, mask_credential
from .utils.paths import get_logs_dir


class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logs."""

    def format(self, record):
        # The message is already a dict, so we just format it as a JSON string
        return json.dumps(record.msg, ensure_ascii=False)


# Module-level state for lazy initialization
_failure_logger: Optional[logging.Logger] = None
_configured_logs_dir: Optional[Path] = None


def configure_failure_logger(logs_dir: Optional[Union[Path, str]] = None) -> None:
    """
    Configure the failure logger to use a specific logs directory.

    Call this before first use to override the default location. If not
    called, the logger uses get_logs_dir() on first use.
    """
    global _configured_logs_dir, _failure_logger
    _configured_logs_dir = Path(logs_dir) if logs_dir else None
    # Reset logger so it gets reconfigured on next use
    _failure_logger = None


def _setup_failure_logger(logs_dir: Optional[Path]) -> logging.Logger:
    """Sets up a dedicated JSON logger writing to logs/failures.log."""
    logger = logging.getLogger("genai_gateway.failures")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    # Clear existing handlers to prevent duplicates on re-setup
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    try:
        logs_dir = logs_dir or get_logs_dir()
        logs_dir.mkdir(parents=True, exist_ok=True)

        handler = RotatingFileHandler(
            logs_dir / "failures.log",
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=2,
            encoding="utf-8",
        )
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
    except OSError as e:
        logging.warning(f"Cannot create failure log file handler: {e}")
        logger.addHandler(logging.NullHandler())

    return logger


def get_failure_logger() -> logging.Logger:
    """Get the failure logger, initializing it lazily if needed."""
    global _failure_logger

    if _failure_logger is None:
        _failure_logger = _setup_failure_logger(_configured_logs_dir)

    return _failure_logger


main_lib_logger = logging.getLogger("genai_gateway")


def log_failure(
    credential_name: str,
    secret: str,
    model: str,
    attempt: int,
    classified: ClassifiedError,
):
    """
    Logs a detailed failure record to failures.log and a one-line summary
    to the main library logger.
    """
    error = classified.original_exception
    raw_response = None
    response = getattr(error, "response", None)
    if response is not None:
        try:
            raw_response = response.text
        except Exception:
            raw_response = None

    detailed_log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "credential": credential_name,
        "api_key_ending": mask_credential(secret),
        "model": model,
        "attempt_number": attempt,
        "classification": classified.error_type,
        "status_code": classified.status_code,
        "retry_after": classified.retry_after,
        "error_type": type(error).__name__,
        "error_message": str(error)[:5000],
        "raw_response": raw_response[:10000] if raw_response else None,
    }

    try:
        get_failure_logger().error(detailed_log_data)
    except OSError as e:
        logging.warning(f"Failed to write to failures.log: {e}")

    main_lib_logger.debug(
        f"Attempt {attempt} for model {model} with {credential_name} "
        f"({mask_credential(secret)}) failed: {classified.error_type}"
    )
