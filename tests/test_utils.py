"""
Tests for money, identifier, sanitizing and logging helpers.
"""

import json
import logging
from decimal import Decimal

from conftest import START_TIME
from utils import (
    JsonFormatter,
    format_currency,
    generate_id,
    mask_sensitive_data,
    sanitize_input,
    setup_logger,
    to_money,
)


def test_to_money_rounds_half_up():
    assert to_money('19.995') == Decimal('20.00')
    assert to_money(0.1) == Decimal('0.10')
    assert to_money(7) == Decimal('7.00')


def test_format_currency():
    assert format_currency(Decimal('1234.5')) == 'USD 1,234.50'
    assert format_currency(5, 'EUR') == 'EUR 5.00'


def test_generate_id_is_prefixed_and_unique():
    first = generate_id('ESC', START_TIME)
    second = generate_id('ESC', START_TIME)

    assert first.startswith('ESC_20260115120000_')
    assert first != second


def test_sanitize_input():
    assert sanitize_input('  <b>spine "cracked"</b>\x00 ') == 'bspine cracked/b'
    assert sanitize_input(None) == ''
    assert len(sanitize_input('x' * 900)) == 500


def test_mask_sensitive_data():
    assert mask_sensitive_data('pm_card_4242424242') == '**************4242'
    assert mask_sensitive_data('abc') == '***'
    assert mask_sensitive_data(None) == ''


def test_setup_logger_writes_json_file(tmp_path):
    log_file = tmp_path / 'logs' / 'escrow.log'
    logger = setup_logger('escrow_test_json', log_level='DEBUG', log_file=str(log_file),
                          log_format='json')

    logger.info('hold created')
    for handler in logger.handlers:
        handler.flush()

    record = json.loads(log_file.read_text().splitlines()[-1])
    assert record['message'] == 'hold created'
    assert record['level'] == 'INFO'
    assert any(isinstance(h.formatter, JsonFormatter) for h in logger.handlers)

    for handler in logger.handlers:
        handler.close()
    logger.handlers = []


def test_setup_logger_replaces_handlers():
    setup_logger('escrow_test_text')
    logger = setup_logger('escrow_test_text', log_level='warning')

    assert logger.level == logging.WARNING
    assert len(logger.handlers) == 1
