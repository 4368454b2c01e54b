import logging
import logging.config
import os
import json
import socket
from datetime import datetime, timezone
from typing import Optional

import yaml

from .config import Settings, get_settings

_STANDARD_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName', 'taskName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'component', 'run_id', 'hostname',
}

_HOSTNAME = socket.gethostname()


class JsonFormatter(logging.Formatter):
    """Custom JSON formatter with structured fields"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "component": getattr(record, 'component', 'tasktrack'),
            "run_id": getattr(record, 'run_id', None),
            "hostname": getattr(record, 'hostname', _HOSTNAME),
            "pid": record.process,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and key not in log_entry:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def _default_config(log_level: str, log_format: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JsonFormatter},
            "text": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": log_format,
                "stream": "ext://sys.stderr"
            }
        },
        "loggers": {
            "tasktrack": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False
            },
            "uvicorn": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False
            }
        },
        "root": {
            "level": "WARNING",
            "handlers": ["console"]
        }
    }


def setup_logging(settings: Optional[Settings] = None, config_path: str = "LOGGING.yaml"):
    """Setup logging configuration from YAML file or settings"""
    settings = settings or get_settings()
    log_level = settings.log_level.upper()
    log_format = settings.log_format if settings.log_format in ("json", "text") else "json"

    config = None
    if os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logging.getLogger("tasktrack").warning("Could not load %s: %s", config_path, e)

    if not config:
        config = _default_config(log_level, log_format)
    else:
        for logger in config.get("loggers", {}).values():
            logger["level"] = log_level

    logging.config.dictConfig(config)
    return config
