"""Logging setup with masking of wallet secrets and credentials."""

import logging
import os
import re
import sys
from typing import Optional

_MASK = r'\1***MASKED***'
_SECRET_KEYS = (
    r'passphrase',
    r'private[_-]?key',
    r'secret[_-]?key',
    r'mnemonic',
    r'seed[_-]?phrase',
    r'api[_-]?key',
    r'token',
    r'authorization',
)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class SensitiveDataFilter(logging.Filter):
    """Filter to mask wallet secrets in log records."""

    PATTERNS = [
        (re.compile(rf'({key}["\']?\s*[:=]\s*["\']?)([^"\'}}\s,]+)', re.IGNORECASE), _MASK)
        for key in _SECRET_KEYS
    ] + [
        (re.compile(r'(bearer\s+)([^\s,}\'\"]+)', re.IGNORECASE), _MASK),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._mask_value(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask_value(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._mask_value(arg) for arg in record.args)

        return True

    def _mask_value(self, value):
        if isinstance(value, str):
            for pattern, replacement in self.PATTERNS:
                value = pattern.sub(replacement, value)
        return value


def setup_logging(
    component_name: str,
    log_level: Optional[str] = None,
    correlation_id: Optional[str] = None
) -> logging.Logger:
    """
    Set up logging configuration for a component.

    Args:
        component_name: Logger namespace to configure (e.g. 'uploader', 'downloader')
        log_level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to LOG_LEVEL env var or INFO
        correlation_id: Optional id (e.g. cartridge address) included in every line

    Returns:
        Configured logger instance
    """
    if log_level is None:
        log_level = os.getenv('LOG_LEVEL', 'INFO')

    level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(component_name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_formatter(correlation_id))
    handler.addFilter(SensitiveDataFilter())

    logger.addHandler(handler)
    logger.propagate = False

    return logger


def _formatter(correlation_id: Optional[str]) -> logging.Formatter:
    if correlation_id:
        fmt = LOG_FORMAT.replace('%(message)s', f'[{correlation_id}] - %(message)s')
        return logging.Formatter(fmt, datefmt=DATE_FORMAT)
    return logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
