import os
import logging
from logging.handlers import RotatingFileHandler
from config import LOG_DIR, LOG_FILE, AUDIT_LOG_FILE

AUDIT_LOGGER_NAME = "AUDIT"


def _rotating_handler(filename: str, fmt: str) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        os.path.join(LOG_DIR, filename),
        maxBytes=5 * 1024 * 1024,   # 5 MB
        backupCount=5,              # keep 5 logs
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(fmt))
    return handler


def get_logger(name: str) -> logging.Logger:
    os.makedirs(LOG_DIR, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        logger.addHandler(
            _rotating_handler(LOG_FILE, "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s")
        )

    return logger


def get_audit_logger() -> logging.Logger:
    """
    Pipe-separated audit trail (one line per attach / item outcome), kept in its
    own file so it survives the main log's rotation noise.
    """
    os.makedirs(LOG_DIR, exist_ok=True)

    logger = logging.getLogger(AUDIT_LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        logger.addHandler(_rotating_handler(AUDIT_LOG_FILE, "%(asctime)s|%(message)s"))

    return logger
