import logging
import logging.config
from typing import Any

from pythonjsonlogger.json import JsonFormatter

from app.environment import EnvironmentName
from settings import settings

JSON_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s %(processName)s %(taskName)s %(funcName)s %(lineno)d %(message)s"
)
PLAIN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Protocol chatter that drowns out sync logs at INFO.
QUIET_LOGGERS = ["aioimaplib", "aiohttp.access", "asyncio", "sqlalchemy.engine", "python_multipart", "httpx"]


class CustomJsonFormatter(JsonFormatter):
    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._pretty = settings.environment == EnvironmentName.DEVELOPMENT and settings.logging.use_pretty_json
        if self._pretty:
            self.json_indent = 2

    def format(self, record: logging.LogRecord) -> str:
        result = super().format(record)
        if self._pretty:
            result = result.replace("\\n", "\n\t\t")
        return result


def build_logging_config(use_json: bool, level: int) -> dict[str, Any]:
    if use_json:
        formatter = {"format": JSON_FORMAT, "class": "logging_config.CustomJsonFormatter"}
    else:
        formatter = {"format": PLAIN_FORMAT}

    handler = {"formatter": "default", "class": "logging.StreamHandler", "stream": "ext://sys.stdout"}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "handlers": {"stdout": handler},
        "loggers": {
            "": {"handlers": ["stdout"], "level": level, "propagate": False},
            **{name: {"handlers": ["stdout"], "level": logging.WARNING, "propagate": False} for name in QUIET_LOGGERS},
        },
    }


def setup_logging() -> None:
    """Configure the root logger: JSON lines on stdout unless LOGGING_USE_CONFIG is off."""
    logging.config.dictConfig(build_logging_config(settings.logging.use_config is True, settings.logging.level))
    logging.captureWarnings(True)
    logging.disable(logging.NOTSET)
