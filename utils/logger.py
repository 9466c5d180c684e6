"""Rotating file + console logging shared by the app and CLI commands.

Services log with ``extra={...}`` context (visit ids, CHW ids, alert counts);
``ContextFormatter`` appends those fields as ``key=value`` pairs so they reach
the log file instead of being dropped by the format string.
"""
import logging
import os
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(module)s:%(lineno)d | %(message)s"

_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class ContextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = {k: v for k, v in vars(record).items() if k not in _RESERVED and not k.startswith("_")}
        if not context:
            return line
        return line + " | " + " ".join(f"{key}={context[key]}" for key in sorted(context))


def _handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def init_logging(app) -> logging.Logger:
    log_dir = app.config.get("LOG_DIR") or os.path.join(app.instance_path, "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "app.log")
    level = getattr(logging, (app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    formatter = ContextFormatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")

    logger = logging.getLogger(app.name)
    # create_app() runs once per test; stale handlers would hold closed log files.
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    logger.setLevel(level)
    logger.addHandler(_handler(RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8"), level, formatter))
    logger.addHandler(_handler(logging.StreamHandler(), level, formatter))
    logger.propagate = False

    logger.info("Logging initialized", extra={"path": log_path})
    return logger
