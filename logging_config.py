#!/usr/bin/env python3
"""
Logging configuration for the Shopware collection importer.
Provides a general log, an error log and coloured console output.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional


LOGGER_NAMESPACE = 'shopware_import'


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    # ANSI color codes
    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        """Format log record with colors."""
        # Copy so file handlers still see the plain level name
        log_record = logging.makeLogRecord(record.__dict__)

        level_color = self.COLORS.get(log_record.levelname, '')
        log_record.levelname = f"{level_color}{log_record.levelname}{self.RESET}"

        return super().format(log_record)


class ComponentFormatter(logging.Formatter):
    """Formatter that tags each record with the component that emitted it."""

    COMPONENTS = (
        'webhook',
        'processor',
        'shopware',
        'lookup',
        'mapper',
        'writer',
        'enrichment',
        'http',
        'config',
        'main',
    )

    def format(self, record):
        """Format record with component info."""
        component = 'system'
        for key in self.COMPONENTS:
            if key in record.name:
                component = key.upper()
                break

        record.component = component
        return super().format(record)


class IntegrationLogger:
    """Centralized logging setup for the importer."""

    def __init__(self, log_dir: Path, log_level: str = 'INFO'):
        """
        Args:
            log_dir: Directory receiving the log files
            log_level: Root log level name
        """
        self.log_dir = Path(log_dir)
        self.log_level = getattr(logging, str(log_level).upper(), logging.INFO)

        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._setup_root_logger()
        self._setup_file_handlers()
        self._setup_console_handler()

    def _setup_root_logger(self):
        """Setup root logger configuration."""
        root_logger = logging.getLogger()
        root_logger.setLevel(self.log_level)
        root_logger.handlers.clear()

    def _setup_file_handlers(self):
        """Setup file handlers for different log levels."""
        file_formatter = ComponentFormatter(
            '%(asctime)s | %(component)-10s | %(levelname)-8s | %(name)-30s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # General import log with rotation
        main_handler = logging.handlers.RotatingFileHandler(
            filename=self.log_dir / 'import.log',
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        main_handler.setLevel(logging.INFO)
        main_handler.setFormatter(file_formatter)

        # Error log (errors and critical only)
        error_handler = logging.handlers.RotatingFileHandler(
            filename=self.log_dir / 'errors.log',
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3,
            encoding='utf-8'
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(file_formatter)

        if self.log_level == logging.DEBUG:
            debug_handler = logging.handlers.RotatingFileHandler(
                filename=self.log_dir / 'debug.log',
                maxBytes=20 * 1024 * 1024,  # 20MB
                backupCount=2,
                encoding='utf-8'
            )
            debug_handler.setLevel(logging.DEBUG)
            debug_handler.setFormatter(ComponentFormatter(
                '%(asctime)s | %(component)-10s | %(levelname)-8s | %(name)-30s | %(filename)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            logging.getLogger().addHandler(debug_handler)

        logging.getLogger().addHandler(main_handler)
        logging.getLogger().addHandler(error_handler)

    def _setup_console_handler(self):
        """Setup colored console handler."""
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(ColoredFormatter(
            '%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s',
            datefmt='%H:%M:%S'
        ))

        logging.getLogger().addHandler(console_handler)

    def get_logger(self, name: str):
        return get_logger(name)


# Global logger instance
_logger_instance = None


def setup_logging(config=None):
    """
    Setup logging system (call once at application start).

    Args:
        config: Config instance; the global configuration is used when omitted

    Returns:
        IntegrationLogger instance
    """
    global _logger_instance

    if _logger_instance is None:
        if config is None:
            from config import get_config
            config = get_config()
        _logger_instance = IntegrationLogger(config.log_dir, config.log_level)

    return _logger_instance


def get_logger(name: str):
    """
    Get a logger for a component.

    Handlers are only attached by setup_logging(); before that, records
    propagate to whatever the host process configured.

    Args:
        name: Component name (e.g., 'shopware', 'mapper', 'webhook')

    Returns:
        Logger instance
    """
    return logging.getLogger(f'{LOGGER_NAMESPACE}.{name}')


def log_api_call(logger, method: str, url: str, status_code: int, duration: float):
    """Log API call details."""
    logger.debug(f"{method} {url} -> {status_code} ({duration:.2f}s)")


def log_product_processing(logger, asin: Optional[str], stage: str, status: str, details: str = ""):
    """Log product processing events."""
    message = f"Product {asin or 'Unknown'} | {stage} | {status}"
    if details:
        message += f" | {details}"

    if status.lower() in ['success', 'created', 'completed', 'ok']:
        logger.info(message)
    elif status.lower() in ['warning', 'skipped', 'partial']:
        logger.warning(message)
    else:
        logger.error(message)


def log_system_event(logger, event: str, details: dict = None):
    """Log system events with structured data."""
    message = f"System Event: {event}"

    if details:
        detail_str = " | ".join([f"{k}={v}" for k, v in details.items()])
        message += f" | {detail_str}"

    logger.info(message)


def log_exception(logger, operation: str, exception: Exception, context: dict = None):
    """Log exceptions with context."""
    message = f"Exception in {operation}: {type(exception).__name__}: {exception}"

    if context:
        context_str = " | ".join([f"{k}={v}" for k, v in context.items()])
        message += f" | Context: {context_str}"

    logger.error(message, exc_info=True)
