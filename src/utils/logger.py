"""
Logging Module for the Adaptive Arbitrage Pipeline

Provides structured logging with:
- Rotating file handlers for continuous operation
- JSON formatting of ``extra={...}`` fields for log aggregation
- Plain-text console output for operators
- Helpers for per-cycle and error events

Usage:
    logger = get_logger(__name__)
    logger.info("Candidate approved", extra={'chain_id': 1, 'net_profit': 10**15})
"""

import logging
import logging.handlers
import os
import sys
import json
from datetime import datetime, timezone
from typing import Optional

from config.constants import (
    LOG_LEVEL,
    LOG_FILE_PATH,
    MAX_LOG_FILE_SIZE,
    LOG_BACKUP_COUNT,
    STRUCTURED_LOGGING,
)


_RESERVED_RECORD_KEYS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'message', 'pathname', 'process', 'processName', 'relativeCreated',
    'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
    'getMessage', 'taskName', 'asctime',
])


class JSONFormatter(logging.Formatter):
    """Custom formatter that outputs structured JSON logs"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line_number': record.lineno,
            'process_id': record.process,
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': self.formatException(record.exc_info)
            }

        # Extra fields passed via logger.info(..., extra={...})
        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS:
                continue
            if isinstance(value, (str, int, float, bool, type(None), dict, list)):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class PlainTextFormatter(logging.Formatter):
    """Simple text formatter for readable console output"""

    def format(self, record: logging.LogRecord) -> str:
        record.asctime = self.formatTime(record, self.datefmt)
        line = (
            f"{record.asctime} | {record.levelname:8} | "
            f"{record.name}:{record.funcName}:{record.lineno} | "
            f"{record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    structured: Optional[bool] = None
) -> None:
    """
    Configure logging for the host process.

    Sets up:
    - Console handler: Plain text for operator visibility
    - File handler: Rotating files, JSON when ``structured`` is enabled

    Args:
        log_level: Logging level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Log file path override
        structured: Use JSON formatting for the file handler

    Raises:
        ValueError: If invalid log level specified
    """
    level = (log_level or LOG_LEVEL).upper()
    filepath = log_file or LOG_FILE_PATH
    use_json = structured if structured is not None else STRUCTURED_LOGGING

    valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
    if level not in valid_levels:
        raise ValueError(f"Invalid log level: {level}. Must be one of {valid_levels}")

    log_dir = os.path.dirname(filepath)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    root_logger.handlers.clear()

    # ========================================================================
    # CONSOLE HANDLER
    # ========================================================================
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level))
    console_handler.setFormatter(PlainTextFormatter(datefmt='%Y-%m-%d %H:%M:%S'))
    root_logger.addHandler(console_handler)

    # ========================================================================
    # FILE HANDLER
    # ========================================================================
    file_handler = logging.handlers.RotatingFileHandler(
        filepath,
        maxBytes=MAX_LOG_FILE_SIZE,
        backupCount=LOG_BACKUP_COUNT
    )
    file_handler.setLevel(getattr(logging, level))
    if use_json:
        file_handler.setFormatter(JSONFormatter())
    else:
        file_handler.setFormatter(PlainTextFormatter(datefmt='%Y-%m-%d %H:%M:%S'))
    root_logger.addHandler(file_handler)

    get_logger(__name__).info(
        "Logging initialized",
        extra={
            'log_level': level,
            'log_file': filepath,
            'max_size_mb': MAX_LOG_FILE_SIZE // (1024 * 1024),
            'backup_count': LOG_BACKUP_COUNT,
            'structured_logging': use_json,
        }
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: Logger name (typically __name__ from calling module)
    """
    return logging.getLogger(name)


def log_trade_event(
    logger: logging.Logger,
    event_type: str,
    **details
) -> None:
    """
    Log a pipeline event with structured information.

    Args:
        logger: Logger instance
        event_type: Event type (SCAN_CYCLE, CANDIDATE_APPROVED, BREAKER_OPENED, ...)
        **details: Event fields, serialised by the JSON formatter

    Example:
        log_trade_event(
            logger, 'CANDIDATE_REJECTED',
            chain_id=1, path='WETH-USDC', limits=['max_single_trade']
        )
    """
    details['event_type'] = event_type
    logger.info(f"Pipeline event: {event_type}", extra=details)


def log_error_with_context(
    logger: logging.Logger,
    message: str,
    error: Exception,
    level: int = logging.ERROR,
    **context
) -> None:
    """
    Log an error with full context and exception details.

    Args:
        logger: Logger instance
        message: Error description
        error: The exception that occurred
        level: Log level (recoverable source failures log at WARNING)
        **context: Additional context information
    """
    context['error_type'] = type(error).__name__
    context['error_message'] = str(error)
    logger.log(level, message, exc_info=error, extra=context)
