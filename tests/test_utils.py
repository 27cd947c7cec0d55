"""Tests for date helpers used by contribution schedules."""

from datetime import date

import pytest

from app.utils import add_months, as_bool, round_due_date


@pytest.mark.parametrize('start, months, expected', [
    (date(2026, 1, 31), 1, date(2026, 2, 28)),
    (date(2028, 1, 31), 1, date(2028, 2, 29)),
    (date(2026, 3, 31), 1, date(2026, 4, 30)),
    (date(2026, 11, 15), 3, date(2027, 2, 15)),
    (date(2026, 5, 10), 0, date(2026, 5, 10)),
])
def test_add_months_clamps_day(start, months, expected):
    assert add_months(start, months) == expected


@pytest.mark.parametrize('frequency, round_number, expected', [
    ('weekly', 1, date(2026, 1, 31)),
    ('weekly', 3, date(2026, 2, 14)),
    ('biweekly', 2, date(2026, 2, 14)),
    ('monthly', 2, date(2026, 2, 28)),
    ('monthly', 3, date(2026, 3, 31)),
    ('quarterly', 2, date(2026, 4, 30)),
    ('quarterly', 5, date(2027, 1, 31)),
])
def test_round_due_date(frequency, round_number, expected):
    assert round_due_date(date(2026, 1, 31), frequency, round_number) == expected


@pytest.mark.parametrize('value, expected', [
    (True, True), ('true', True), ('On', True), ('1', True),
    (False, False), ('false', False), ('0', False), ('no', False),
])
def test_as_bool(value, expected):
    assert as_bool(value) is expected


def test_as_bool_default_for_missing_values():
    assert as_bool(None) is False
    assert as_bool('', default=True) is True
