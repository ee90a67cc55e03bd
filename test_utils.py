"""Tests for utility helpers."""

import logging
import re
from datetime import datetime
from decimal import Decimal

import pytest

from utils import (
    format_currency,
    format_datetime,
    generate_reference,
    mask_sensitive_data,
    parse_amount,
    sanitize_input,
    setup_logger,
)


@pytest.mark.parametrize("raw, expected", [
    ("1,200.50", Decimal("1200.50")),
    (" 42 ", Decimal("42")),
    (10, Decimal("10")),
    (Decimal("0.1"), Decimal("0.1")),
])
def test_parse_amount_valid(raw, expected):
    is_valid, value, error = parse_amount(raw)
    assert is_valid
    assert value == expected
    assert error is None


@pytest.mark.parametrize("raw", ["abc", "", None, True, "NaN", "Infinity"])
def test_parse_amount_invalid(raw):
    is_valid, value, error = parse_amount(raw)
    assert not is_valid
    assert value is None
    assert "Invalid amount" in error


def test_format_currency():
    assert format_currency(Decimal("1234.5")) == "USD 1,234.50"
    assert format_currency(Decimal("0.125"), "SOL") == "SOL 0.125"


def test_format_datetime():
    assert format_datetime(None) == "N/A"
    assert format_datetime(datetime(2026, 3, 1, 9, 30)) == "2026-03-01 09:30:00"


def test_sanitize_input():
    assert sanitize_input("<b>Torn seam</b> on arrival") == "bTorn seam/b on arrival"
    assert sanitize_input("  ok\x00 ") == "ok"
    assert sanitize_input("x" * 50, max_length=10) == "x" * 10
    assert sanitize_input("") == ""


def test_mask_sensitive_data():
    assert mask_sensitive_data("abcdefgh") == "****efgh"
    assert mask_sensitive_data("abc") == "***"
    assert mask_sensitive_data(None) == ""


def test_generate_reference_is_unique():
    first, second = generate_reference("ORD"), generate_reference("ORD")
    assert re.fullmatch(r"ORD_\d{14}_[0-9A-F]{8}", first)
    assert first != second


def test_setup_logger_writes_file(tmp_path):
    log_file = tmp_path / "logs" / "escrow.log"
    logger = setup_logger("escrow-test", "DEBUG", str(log_file), colorful_console=False)

    logger.info("service started")
    for handler in logger.handlers:
        handler.flush()

    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 2
    assert "service started" in log_file.read_text()

    for handler in logger.handlers:
        handler.close()
    logger.handlers = []
