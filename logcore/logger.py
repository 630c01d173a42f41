"""
LogCore: structured JSON logging for the telemetry agent.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Loggers handed out by get_logger, so setup_logging can reconfigure them
_managed: Dict[str, logging.Logger] = {}

_defaults = {
    'level': logging.INFO,
    'log_file': None,
    'use_json': True,
}


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per record.

    Output format:
    {
        "timestamp": "2026-02-08T20:30:00.123456Z",
        "level": "WARNING",
        "logger": "telemetry_agent.dispatcher",
        "message": "Failed to report logs",
        "context": {"component": "dispatcher", "error": "..."}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        log_data = {
            'timestamp': timestamp.strftime('%Y-%m-%dT%H:%M:%S.%f') + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        # logger.warning(..., extra={'context': {...}})
        if getattr(record, 'context', None):
            log_data['context'] = record.context

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': self.formatException(record.exc_info)
            }

        if record.levelno <= logging.DEBUG:
            log_data['source'] = {
                'file': record.pathname,
                'line': record.lineno,
                'function': record.funcName
            }

        return json.dumps(log_data, default=str)


def _make_formatter(use_json: bool) -> logging.Formatter:
    if use_json:
        return JSONFormatter()
    return logging.Formatter(PLAIN_FORMAT)


def _attach_handlers(
    logger: logging.Logger,
    level: int,
    log_file: Optional[str],
    use_json: bool
) -> None:
    has_console_handler = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    has_file_handler = any(
        isinstance(h, logging.FileHandler) and h.baseFilename == log_file
        for h in logger.handlers
    ) if log_file else False

    if not has_console_handler:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(_make_formatter(use_json))
        logger.addHandler(console_handler)

    if log_file and not has_file_handler:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(_make_formatter(use_json))
        logger.addHandler(file_handler)


def get_logger(
    name: str,
    level: Optional[int] = None,
    log_file: Optional[str] = None,
    use_json: Optional[bool] = None
) -> logging.Logger:
    """
    Get a pre-configured logger instance.

    Args:
        name: Logger name (typically __name__)
        level: Logging level (default: INFO, or whatever setup_logging set)
        log_file: Optional file path for an extra file handler
        use_json: Use JSON formatter (default: True)

    Returns:
        Configured logger instance

    Example:
        logger = get_logger(__name__)
        logger.warning("Push failed", extra={'context': {'kind': 'logs'}})
    """
    if level is None:
        level = _defaults['level']
    if log_file is None:
        log_file = _defaults['log_file']
    if use_json is None:
        use_json = _defaults['use_json']

    logger = logging.getLogger(name)
    logger.setLevel(level)
    _attach_handlers(logger, level, log_file, use_json)

    _managed[name] = logger
    return logger


def setup_logging(
    level: int = logging.INFO,
    use_json: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Reconfigure every logger obtained through get_logger.

    Modules create their loggers at import time with the defaults; the CLI
    calls this once after parsing flags so level, format and file output
    apply everywhere, including loggers created later.
    """
    _defaults['level'] = level
    _defaults['use_json'] = use_json
    _defaults['log_file'] = log_file

    for logger in _managed.values():
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.setLevel(level)
        _attach_handlers(logger, level, log_file, use_json)
