"""Logging setup for the qualitygate CLI."""

import json
import logging
import os
from datetime import datetime, timezone


class JSONFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, exception."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level_override: str | None = None) -> None:
    """Configure the root logger from LOG_LEVEL and LOG_FORMAT.

    Logs go to stderr so the report on stdout stays clean. The default level
    is WARNING; step progress is logged at INFO.
    """
    level_name = (level_override or os.getenv("LOG_LEVEL", "WARNING")).upper()
    level = getattr(logging, level_name, logging.WARNING)
    if not isinstance(level, int):
        level = logging.WARNING

    log_format = os.getenv("LOG_FORMAT", "text").lower()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(level)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )

    root_logger.addHandler(handler)

    for name in ("docker", "urllib3", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)
