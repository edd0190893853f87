# server/logging_config.py
import copy
import logging.config
from typing import Any, Dict

PROJECT_LOGGERS = ("backends", "invokers", "server")

LOGGING_CONFIG: Dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "default": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": "ext://sys.stderr",
        },
    },
    "loggers": {
        "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
        "uvicorn.error": {"level": "INFO"},
        "uvicorn.access": {"handlers": ["default"], "level": "INFO", "propagate": False},
        "backends": {"handlers": ["default"], "level": "INFO", "propagate": False},
        "invokers": {"handlers": ["default"], "level": "INFO", "propagate": False},
        "server": {"handlers": ["default"], "level": "INFO", "propagate": False},
    },
}


def build_logging_config(level: str = "INFO") -> Dict[str, Any]:
    """LOGGING_CONFIG with the project loggers at `level` (uvicorn stays at INFO)."""
    config = copy.deepcopy(LOGGING_CONFIG)
    for name in PROJECT_LOGGERS:
        config["loggers"][name]["level"] = level
    return config


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(build_logging_config(level))
