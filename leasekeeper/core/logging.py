"""JSON log output for the consumer and transports.

Every record becomes one JSON object per line. Consumer records carry the
queue URL and, where a message is involved, its id (or ids for a batch),
so a log pipeline can follow one message across receive, handle and
acknowledge.
"""

import json
import logging
from datetime import UTC, datetime
from typing import Any

CONSUMER_LOGGER_NAME = "leasekeeper.consumer"

# Attributes every LogRecord has; anything else arrived through extra={}
_BUILTIN_ATTRS: frozenset[str] = frozenset(
    vars(logging.makeLogRecord({})).keys()
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON object with a UTC timestamp."""

    context_fields: tuple[str, ...] = (
        "queue_url",
        "event",
        "message_id",
        "message_ids",
        "error",
    )

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(self._context(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        try:
            return json.dumps(payload, default=str)
        except (TypeError, ValueError):
            return str(payload)

    def _context(self, record: logging.LogRecord) -> dict[str, Any]:
        attrs = vars(record)
        ordered = {name: attrs[name] for name in self.context_fields if name in attrs}
        for name, value in attrs.items():
            if name not in _BUILTIN_ATTRS and name not in ordered:
                ordered[name] = value
        return ordered


def get_logger(name: str = "leasekeeper", level: int = logging.INFO) -> logging.Logger:
    """Return a non-propagating logger that writes JSON to stderr.

    The handler is attached once; later calls only adjust the level.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(h.formatter, JSONFormatter) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def configure_consumer_logger(level: int = logging.INFO) -> logging.Logger:
    return get_logger(CONSUMER_LOGGER_NAME, level)
