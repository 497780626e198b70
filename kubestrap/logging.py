"""Logging configuration for the kubestrap package."""
import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Libraries that are too chatty at DEBUG/INFO
NOISY_LOGGERS = ('paramiko', 'urllib3', 'kubernetes')

# kubeadm bootstrap tokens, certificate keys and CA hashes
_SECRET_PATTERNS = [
    re.compile(r'\b[a-z0-9]{6}\.[a-z0-9]{16}\b'),
    re.compile(r'\b[0-9a-f]{64}\b'),
    re.compile(r'(?i)((?:token|password|secret|auth_pass|certificate[-_]key)["\']?\s*[:=]\s*["\']?)[^\s"\',]+'),
]


def redact(text: str) -> str:
    """Mask anything that looks like a join credential."""
    for pattern in _SECRET_PATTERNS:
        if pattern.groups:
            text = pattern.sub(lambda m: m.group(1) + '***', text)
        else:
            text = pattern.sub('***', text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Keep credentials out of every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 100,
    backup_count: int = 5,
    debug: bool = False,
) -> logging.Logger:
    """Configure the ``kubestrap`` logger hierarchy.

    Args:
        level: Log level name used unless ``debug`` is set
        log_file: Optional path of a rotating log file
        max_size_mb: Maximum log file size before rotation
        backup_count: Number of rotated files to keep
        debug: Force DEBUG level

    Returns:
        The configured ``kubestrap`` logger
    """
    log_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger("kubestrap")
    logger.setLevel(log_level)
    logger.propagate = False

    # Clear existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    redactor = SecretRedactingFilter()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(redactor)
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(redactor)
        logger.addHandler(file_handler)
        logger.debug(f"Logging to file: {path}")

    # Disable debug logging for noisy libraries
    if not debug:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    return logger
