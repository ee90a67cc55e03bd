"""
Utilities module for the fashion marketplace escrow service.

Logging setup plus the small parsing, formatting and masking helpers the
lifecycle modules share.
"""

import json
import logging
import re
import sys
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, List, Optional, Tuple


TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# References minted by generate_reference(), e.g. ORD_20261018143022_3F2A9C1B
REFERENCE_PATTERN = re.compile(r'\b[A-Z]{3}_\d{14}_[0-9A-F]{8}\b')

_UNSAFE_CHARS = re.compile(r'[<>"\';`]')


# ==================== LOGGING ====================

class ConsoleFormatter(logging.Formatter):
    """
    Console formatter with ANSI colours.

    Levels are coloured by severity and order, escrow and dispute
    references in the message are highlighted so a transition can be
    followed by eye.
    """

    RESET = '\033[0m'
    REFERENCE = '\033[96m'
    LOGGER = '\033[90m'
    LEVELS = {
        logging.DEBUG: '\033[90m',
        logging.INFO: '\033[94m',
        logging.WARNING: '\033[93m',
        logging.ERROR: '\033[91m',
        logging.CRITICAL: '\033[1m\033[91m',
    }

    def format(self, record: logging.LogRecord) -> str:
        # Work on a copy: file handlers receive the same record
        record = logging.makeLogRecord(record.__dict__)
        colour = self.LEVELS.get(record.levelno, self.RESET)

        record.levelname = f"{colour}{record.levelname}{self.RESET}"
        record.name = f"{self.LOGGER}{record.name}{self.RESET}"
        record.msg = REFERENCE_PATTERN.sub(
            lambda m: f"{self.REFERENCE}{m.group(0)}{self.RESET}", record.getMessage()
        )
        record.args = None

        return super().format(record)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'time': self.formatTime(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def _formatter_for(log_format: str, colour: bool) -> logging.Formatter:
    if log_format == 'json':
        return JsonFormatter()
    if colour:
        return ConsoleFormatter(TEXT_FORMAT)
    return logging.Formatter(TEXT_FORMAT)


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
    Configure a logger with a console handler and an optional rotating file.

    Passing no name configures the root logger, which is what main.py does
    so that every module logger inherits the handlers. Calling it again
    replaces the handlers instead of stacking them.

    Args:
        name: Logger name (None for the root logger)
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_file: Path of the log file; parent directories are created
        log_format: 'text' or 'json'
        max_bytes: File size that triggers rotation
        backup_count: Rotated files to keep
        colorful_console: Colour the console output (text format only)

    Returns:
        The configured logger

    Example:
        >>> logger = setup_logger('escrow', 'DEBUG', 'logs/escrow.log')
        >>> logger.info('Order ORD_20261018143022_3F2A9C1B paid')
    """
    level = getattr(logging, log_level.upper())
    logger = logging.getLogger(name)
    logger.setLevel(level)

    handlers: List[logging.Handler] = []

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(_formatter_for(log_format, colorful_console))
    handlers.append(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
        )
        rotating.setFormatter(_formatter_for(log_format, colour=False))
        handlers.append(rotating)

    for handler in handlers:
        handler.setLevel(level)
    logger.handlers = handlers

    return logger


# ==================== AMOUNTS & FORMATTING ====================

def parse_amount(amount: Any) -> Tuple[bool, Optional[Decimal], Optional[str]]:
    """
    Parse a monetary amount into a Decimal.

    Floats go through str() so 0.1 stays 0.1; thousands separators are
    accepted in strings. Booleans, NaN and infinities are rejected.

    Returns:
        Tuple of (is_valid, amount_as_decimal, error_message)

    Example:
        >>> parse_amount('1,200.50')
        (True, Decimal('1200.50'), None)
    """
    error = f"Invalid amount format: '{amount}'"
    if isinstance(amount, bool):
        return False, None, error

    text = amount.replace(',', '').strip() if isinstance(amount, str) else str(amount)
    try:
        value = Decimal(text)
    except (InvalidOperation, ValueError):
        return False, None, error

    if not value.is_finite():
        return False, None, error
    return True, value, None


def format_currency(amount: Decimal, currency: str = 'USD') -> str:
    """
    Render an amount for messages: two decimals unless more are significant.

    Example:
        >>> format_currency(Decimal('1234.5'))
        'USD 1,234.50'
        >>> format_currency(Decimal('0.125'), 'SOL')
        'SOL 0.125'
    """
    value = Decimal(str(amount))
    cents = value.quantize(Decimal('0.01'))
    if value == cents:
        return f"{currency} {cents:,.2f}"
    return f"{currency} {value.normalize():,f}"


def format_datetime(value: Optional[datetime], fmt: str = '%Y-%m-%d %H:%M:%S') -> str:
    if not value:
        return 'N/A'
    return value.strftime(fmt)


# ==================== INPUT & SECRETS ====================

def sanitize_input(text: str, max_length: int = 2000) -> str:
    """
    Clean free text before it is stored or echoed into an HTML message.

    Truncates, drops markup and quote characters and control characters
    (newlines and tabs survive), then trims whitespace.

    Example:
        >>> sanitize_input('<b>Torn seam</b> on arrival')
        'bTorn seam/b on arrival'
    """
    if not text:
        return ''

    cleaned = _UNSAFE_CHARS.sub('', text[:max_length])
    cleaned = ''.join(ch for ch in cleaned if ch.isprintable() or ch in '\n\r\t')
    return cleaned.strip()


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """
    Hide all but the last few characters of a wallet address or token.

    Example:
        >>> mask_sensitive_data('9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin')
        '****************************************VFin'
    """
    if not data:
        return ''
    if len(data) <= visible_chars:
        return '*' * len(data)
    return data[-visible_chars:].rjust(len(data), '*')


def generate_reference(prefix: str) -> str:
    """
    Mint a unique, sortable reference such as 'ORD_20261018143022_3F2A9C1B'.
    """
    stamp = datetime.now().strftime('%Y%m%d%H%M%S')
    return f"{prefix}_{stamp}_{uuid.uuid4().hex[:8].upper()}"
