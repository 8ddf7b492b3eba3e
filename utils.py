"""
Utilities module for the book rental escrow service.

Provides helper functions for logging, money handling, masking,
identifier generation and time.
"""

import json
import logging
import re
import sys
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union
from logging.handlers import RotatingFileHandler
from pathlib import Path


CENTS = Decimal('0.01')


# ANSI color codes for console output
class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
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
        # Work on a copy so file handlers sharing the record stay uncoloured
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, Colors.RESET)
        record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        record.name = f"{Colors.CYAN}{record.name}{Colors.RESET}"
        return super().format(record)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            'time': self.formatTime(record, self.datefmt),
            'name': record.name,
            'level': record.levelname,
            'message': record.getMessage(),
        }
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logger(
    name: str = 'book_escrow',
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: str = 'text',
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    colorful_console: bool = True
) -> logging.Logger:
    """
    Set up a logger with both console and file handlers.

    Args:
        name: Logger name ('' configures the root logger)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        log_format: Format type ('text' or 'json')
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup files to keep
        colorful_console: Whether to use colored console output

    Returns:
        Configured logger instance

    Example:
        >>> logger = setup_logger('book_escrow', 'DEBUG', 'logs/escrow.log')
        >>> logger.info('Application started')
    """
    level = getattr(logging, log_level.upper())
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers = []

    text_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    if log_format == 'json':
        console_formatter = JsonFormatter()
        file_formatter = JsonFormatter()
    else:
        file_formatter = logging.Formatter(text_format)
        console_formatter = ColoredFormatter(text_format) if colorful_console else file_formatter

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
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    return logger


def utc_now() -> datetime:
    """Timezone-aware current time; the default clock for every component."""
    return datetime.now(timezone.utc)


def to_money(amount: Union[Decimal, int, float, str]) -> Decimal:
    """
    Convert a number to a Decimal rounded to cents.

    Floats go through str() first so 0.1 stays 0.10 rather than
    0.1000000000000000055511151231257827.

    Example:
        >>> to_money(19.999)
        Decimal('20.00')
    """
    if isinstance(amount, float):
        amount = str(amount)
    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


def format_currency(amount: Union[Decimal, int, float], currency: str = 'USD') -> str:
    """
    Format amount as currency string.

    Example:
        >>> format_currency(Decimal('1234.5'))
        'USD 1,234.50'
    """
    return f"{currency} {to_money(amount):,}"


def generate_id(prefix: str, now: Optional[datetime] = None) -> str:
    """
    Generate a sortable, unique identifier.

    Example:
        >>> generate_id('ESC')
        'ESC_20240101120000_3f2a9c1d'
    """
    now = now or utc_now()
    return f"{prefix}_{now.strftime('%Y%m%d%H%M%S')}_{uuid.uuid4().hex[:8]}"


def sanitize_input(text: Optional[str], max_length: int = 500) -> str:
    """
    Sanitize free text (notes, reasons) before it is stored.

    Args:
        text: Input text to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized text
    """
    if not text:
        return ''

    text = text[:max_length]

    # Remove potentially dangerous characters
    text = re.sub(r'[<>"\';`]', '', text)

    # Remove control characters
    text = ''.join(char for char in text if ord(char) >= 32 or char in '\n\r\t')

    return text.strip()


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging (e.g., card tokens, IP addresses).

    Args:
        data: Sensitive data to mask
        visible_chars: Number of characters to keep visible at the end

    Returns:
        Masked string

    Example:
        >>> mask_sensitive_data('pm_card_4242424242', 4)
        '**************4242'
    """
    if not data or len(data) <= visible_chars:
        return '*' * len(data) if data else ''

    masked_length = len(data) - visible_chars
    return '*' * masked_length + data[-visible_chars:]
