"""
Utilities module for the escrow service.

Provides helper functions for logging, amount formatting and safe handling
of user-supplied text.
"""

import json
import re
import logging
import sys
from typing import Optional
from logging.handlers import RotatingFileHandler
from pathlib import Path

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


# ANSI color codes for console output
class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colors to console output."""

    COLORS = {
        'DEBUG': Colors.GRAY,
        'INFO': Colors.BLUE,
        'WARNING': Colors.YELLOW,
        'ERROR': Colors.RED,
        'CRITICAL': f"{Colors.BOLD}{Colors.RED}",
    }

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record with colors.

        The record is copied first so other handlers (e.g. the rotating file
        handler) still see plain level and logger names.

        Args:
            record: Log record to format

        Returns:
            Formatted log message with color codes
        """
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, Colors.RESET)
        record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        record.name = f"{Colors.CYAN}{record.name}{Colors.RESET}"
        return super().format(record)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'time': self.formatTime(record),
            'name': record.name,
            'level': record.levelname,
            'message': record.getMessage(),
        }
        if record.exc_info:
            entry['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logger(
    name: Optional[str] = None,
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: str = 'text',
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    colorful_console: bool = True
) -> logging.Logger:
    """
    Set up a logger with both console and file handlers.

    With the default ``name=None`` the root logger is configured, so every
    module-level ``logging.getLogger(__name__)`` logger inherits the handlers.

    Args:
        name: Logger name (None for the root logger)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        log_format: Format type ('text' or 'json')
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup files to keep
        colorful_console: Whether to use colored console output

    Returns:
        Configured logger instance

    Example:
        >>> logger = setup_logger(log_level='DEBUG', log_file='logs/escrow.log')
        >>> logger.info('Application started')
    """
    logger = logging.getLogger(name)
    level = getattr(logging, log_level.upper())
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers = []

    if log_format == 'json':
        plain_formatter: logging.Formatter = JsonFormatter()
        console_formatter = plain_formatter
    else:
        plain_formatter = logging.Formatter(TEXT_FORMAT)
        console_formatter = ColoredFormatter(TEXT_FORMAT) if colorful_console else plain_formatter

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    # File handler with rotation (if log file is specified)
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(plain_formatter)
        logger.addHandler(file_handler)

    return logger


def format_amount(amount: int, currency: str = 'USD', decimals: int = 2) -> str:
    """
    Format an amount held in the smallest currency unit.

    Args:
        amount: Amount in minor units (e.g. cents)
        currency: Currency code
        decimals: Number of minor-unit digits for the currency

    Returns:
        Formatted currency string

    Example:
        >>> format_amount(123456)
        'USD 1,234.56'
        >>> format_amount(1500, 'KES', 0)
        'KES 1,500'
    """
    sign = '-' if amount < 0 else ''
    amount = abs(amount)
    if decimals <= 0:
        return f"{currency} {sign}{amount:,}"
    major, minor = divmod(amount, 10 ** decimals)
    return f"{currency} {sign}{major:,}.{minor:0{decimals}d}"


def sanitize_input(text: Optional[str], max_length: int = 200, strip_markup: bool = True) -> str:
    """
    Sanitize user input before storing or echoing it.

    Args:
        text: Input text to sanitize
        max_length: Maximum allowed length
        strip_markup: Remove characters used in HTML/script injection

    Returns:
        Sanitized text

    Example:
        >>> sanitize_input('<b>hello</b>')
        'bhello/b'
    """
    if not text:
        return ''

    text = text[:max_length]

    if strip_markup:
        text = re.sub(r'[<>"\';`]', '', text)

    # Remove control characters
    text = ''.join(char for char in text if ord(char) >= 32 or char in '\n\r\t')

    return text.strip()


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging (e.g., addresses, receipts, tokens).

    Args:
        data: Sensitive data to mask
        visible_chars: Number of characters to keep visible at the end

    Returns:
        Masked string

    Example:
        >>> mask_sensitive_data('254712345678', 4)
        '********5678'
    """
    if not data or len(data) <= visible_chars:
        return '*' * len(data) if data else ''

    masked_length = len(data) - visible_chars
    return '*' * masked_length + data[-visible_chars:]
