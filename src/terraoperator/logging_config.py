"""
Logging configuration for the agent service, the controller and the CLI.

Everything goes to stderr through one handler; stdout is left to command
output such as `--json` results.
"""

import logging
import logging.config
from typing import Any, Dict


class HealthCheckFilter(logging.Filter):
    """Drops uvicorn access lines for GET /healthz (liveness probes)."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        return not ("GET" in message and "/healthz" in message)


def get_logging_config(level: str = "INFO") -> Dict[str, Any]:
    level = level.upper()

    def quiet(lvl: str, **extra: Any) -> Dict[str, Any]:
        return {"handlers": ["default"], "level": lvl, "propagate": False, **extra}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"health_check": {"()": HealthCheckFilter}},
        "formatters": {
            "default": {"format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"},
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            "terraoperator": quiet(level),
            "uvicorn": quiet("INFO"),
            "uvicorn.access": quiet("INFO", filters=["health_check"]),
            # the kubernetes client logs every request at DEBUG
            "kubernetes": quiet("WARNING"),
        },
        "root": {"level": level, "handlers": ["default"]},
    }


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(get_logging_config(level))
