"""
Structured text logging for the key-management service.

Every record renders as ``timestamp | LEVEL | logger | message | k=v ...``.
Fields whose name marks them as key material are masked before they reach
a handler, so a stray ``logger.debug("...", dek=...)`` cannot leak a DEK.
"""
import logging
import sys
from typing import Dict, Tuple
from filevault.config import settings

# Field names that may carry key material or credentials
SENSITIVE_FIELDS = frozenset({
    "dek",
    "plaintext",
    "plaintext_dek",
    "encrypted_dek",
    "dek_ciphertext",
    "master_key",
    "token",
    "authorization",
})

REDACTED = "<redacted>"

# settings attribute -> (default level, library loggers)
THIRD_PARTY_LOGGERS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "SQLALCHEMY_LOG_LEVEL": ("WARNING", ("sqlalchemy.engine", "sqlalchemy.pool")),
    "UVICORN_LOG_LEVEL": ("INFO", ("uvicorn", "uvicorn.access")),
    "HTTPX_LOG_LEVEL": ("WARNING", ("httpx",)),
    "ASYNCPG_LOG_LEVEL": ("WARNING", ("asyncpg",)),
    "BOTOCORE_LOG_LEVEL": ("WARNING", ("botocore", "boto3")),
}


class StructuredFormatter(logging.Formatter):
    """Formatter rendering extra record attributes as key=value pairs."""

    STANDARD_FIELDS = {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "message", "pathname", "process", "processName", "relativeCreated",
        "thread", "threadName", "exc_info", "exc_text", "stack_info", "taskName"
    }

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        line = f"{timestamp} | {record.levelname:8} | {record.name} | {record.getMessage()}"

        fields = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in self.STANDARD_FIELDS
        ]
        if fields:
            line += " | " + " ".join(fields)

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)

        return line


def _level(name: str) -> int:
    return getattr(logging, name.upper())


def setup_logging() -> logging.Logger:
    """
    Configure the ``filevault`` logger and third-party library levels.

    APP_LOG_LEVEL (falling back to LOG_LEVEL) sets the service level; the
    per-library settings in THIRD_PARTY_LOGGERS override their defaults.
    """
    logger = logging.getLogger("filevault")
    app_log_level = (settings.APP_LOG_LEVEL or settings.LOG_LEVEL).upper()
    logger.setLevel(_level(app_log_level))

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(_level(app_log_level))
    console_handler.setFormatter(StructuredFormatter())

    logger.addHandler(console_handler)
    logger.propagate = False

    levels = _configure_third_party_loggers()
    logger.debug(
        "Logging configured",
        extra={"app_log_level": app_log_level, **{k.lower(): v for k, v in levels.items()}},
    )

    return logger


def _configure_third_party_loggers() -> Dict[str, str]:
    """Apply per-library log levels and return setting name -> level."""
    configured = {}
    for setting_name, (default, logger_names) in THIRD_PARTY_LOGGERS.items():
        level = (getattr(settings, setting_name) or default).upper()
        for logger_name in logger_names:
            logging.getLogger(logger_name).setLevel(_level(level))
        configured[setting_name] = level
    return configured


class StructuredLogger:
    """Wrapper around logging.Logger that takes structured fields as keyword arguments."""

    # Reserved field names in LogRecord that should be prefixed
    RESERVED_FIELDS = StructuredFormatter.STANDARD_FIELDS

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _log(self, level: int, msg: str, *args, **kwargs):
        exc_info = kwargs.pop("exc_info", False)

        extra = {}
        for key, value in kwargs.items():
            if key.lower() in SENSITIVE_FIELDS:
                value = REDACTED
            if key in self.RESERVED_FIELDS:
                extra[f"ctx_{key}"] = value
            else:
                extra[key] = value

        self._logger.log(level, msg, *args, extra=extra, exc_info=exc_info, stacklevel=3)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._log(logging.CRITICAL, msg, *args, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger under the ``filevault`` namespace.

    Usage:
        logger = get_logger("key_registry")
        logger.info("KEK created", kek_id=str(kek.id), user_id=str(owner_id))
    """
    return StructuredLogger(logging.getLogger(f"filevault.{name}"))


# Initialize application logger
app_logger = setup_logging()
