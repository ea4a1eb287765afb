"""Structured logging configuration (console plus JSON log files)."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from pythonjsonlogger import jsonlogger

from marketscan.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that adds timestamp, level and source fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"

        if record.funcName:
            log_record['function'] = record.funcName


def setup_logging(base_dir: str | Path | None = None, level: str | None = None):
    """Configure logging for the engine.

    Args:
        base_dir: Directory that receives the logs/ folder. Defaults to the
                  current working directory.
        level: Overrides settings.log_level when given.
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, (level or settings.log_level).upper()))
    root_logger.handlers.clear()

    # Console handler (human-readable)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    json_handler = logging.FileHandler(logs_dir / "app.log")
    json_handler.setLevel(logging.DEBUG)
    json_handler.setFormatter(json_formatter)
    root_logger.addHandler(json_handler)

    error_handler = logging.FileHandler(logs_dir / "error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    # Playwright and httpx are chatty at DEBUG
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges context fields into every record."""

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger with context fields attached.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields (e.g., job_id='...', job_type='listing_scan')

    Returns:
        LoggerAdapter with context
    """
    return LoggerAdapter(logging.getLogger(name), context)
