"""JSON logging configuration for the PKI controller."""

import logging
import os

from pythonjsonlogger import jsonlogger

# Record attributes copied into every JSON line
BASE_FIELDS = ("timestamp", "level", "logger", "message", "exc_info")

# Request-scoped attributes passed through ``extra=``
CONTEXT_FIELDS = ("request_id",)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter emitting one compact object per record.

    Keeps the short logger name so records from the reconciler, CA manager
    and backend client can be told apart, and passes through request ids
    supplied by callers.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record["level"] = log_record.pop("levelname", record.levelname)
        log_record["logger"] = record.name.rsplit(".", 1)[-1]

        for key in list(log_record):
            if key not in BASE_FIELDS and key not in CONTEXT_FIELDS:
                del log_record[key]


def _setup_logger(level: str | None = None) -> logging.Logger:
    """Attach the JSON handler to the ``pki_controller`` logger.

    Module loggers (``pki_controller.lib.*``) propagate into this one, so
    every record is formatted by the same handler. The level comes from
    ``LOG_LEVEL`` unless given.

    Returns:
        Configured package logger
    """
    logger = logging.getLogger("pki_controller")

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(CustomJsonFormatter(fmt="%(levelname)s %(message)s", timestamp=True))
        logger.addHandler(handler)
        logger.propagate = False

    level_name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    return logger


LOGGER = _setup_logger()
