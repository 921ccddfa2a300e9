import sys
import logging
from pathlib import Path

import colorlog


class GatewayDebugFilter(logging.Filter):
    """Only DEBUG records from the gateway library reach the debug file."""

    def filter(self, record):
        return record.levelno == logging.DEBUG and record.name.startswith(
            "genai_gateway"
        )


def build_console_handler() -> logging.Handler:
    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )
    return console_handler


def configure_logging(log_dir: Path) -> None:
    """
    Console (INFO+, colored), relay.log (INFO+) and relay_debug.log
    (gateway DEBUG only) on the root logger.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    file_format = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    info_file_handler = logging.FileHandler(log_dir / "relay.log", encoding="utf-8")
    info_file_handler.setLevel(logging.INFO)
    info_file_handler.setFormatter(file_format)

    debug_file_handler = logging.FileHandler(log_dir / "relay_debug.log", encoding="utf-8")
    debug_file_handler.setLevel(logging.DEBUG)
    debug_file_handler.setFormatter(file_format)
    debug_file_handler.addFilter(GatewayDebugFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(info_file_handler)
    root_logger.addHandler(build_console_handler())
    root_logger.addHandler(debug_file_handler)

    # Silence noisy loggers
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
