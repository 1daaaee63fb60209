"""JSON-line event logging on the shared ``app`` logger."""
from __future__ import annotations
import json
import logging


def configure_logging(level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger("app")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(message)s'))  # already JSON
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    return logger


def log_event(level: int, event: str, **fields) -> None:
    payload = {"event": event}
    payload.update(fields)
    logging.getLogger("app").log(level, json.dumps(payload, default=str))
