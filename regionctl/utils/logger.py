"""
Structured logging utilities for the controller.
"""

import json
import logging
import sys
from datetime import datetime, timezone

CONTEXT_FIELDS = ('region', 'revision', 'operation', 'attempt_id')


class StructuredFormatter(logging.Formatter):
    """
    Custom formatter that outputs structured JSON logs.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        return json.dumps(log_data)


class SimpleFormatter(logging.Formatter):
    """
    Simple human-readable formatter for terminals.
    """

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


def setup_logging(level: str = 'INFO', structured: bool = False) -> None:
    """
    Configure logging for the controller.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Use structured JSON logging if True, simple format if False
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # stdout carries the command result
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(StructuredFormatter() if structured else SimpleFormatter())
    root_logger.addHandler(console_handler)

    for noisy in ('boto3', 'botocore', 'urllib3', 'kubernetes', 'aiohttp'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class ControllerLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that adds region / revision / operation context.
    """

    def process(self, msg, kwargs):
        """Add extra context to log records."""
        extra = dict(kwargs.get('extra', {}))

        for name in CONTEXT_FIELDS:
            if name in self.extra and name not in extra:
                extra[name] = self.extra[name]

        kwargs['extra'] = extra
        return msg, kwargs
