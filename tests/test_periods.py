"""Tests for billing window helpers."""

from datetime import UTC, datetime, timedelta, timezone

from entitlements.utils.periods import (
    add_one_month,
    current_month_window,
    is_current_window,
    parse_datetime,
    to_iso,
)


def test_current_month_window_mid_month():
    starts, ends = current_month_window(datetime(2025, 3, 15, 12, 30, tzinfo=UTC))

    assert starts == datetime(2025, 3, 1, tzinfo=UTC)
    assert ends == datetime(2025, 4, 1, tzinfo=UTC)


def test_current_month_window_december_rolls_year():
    starts, ends = current_month_window(datetime(2024, 12, 31, 23, 59, tzinfo=UTC))

    assert starts == datetime(2024, 12, 1, tzinfo=UTC)
    assert ends == datetime(2025, 1, 1, tzinfo=UTC)


def test_is_current_window_boundaries():
    now = datetime(2025, 3, 15, tzinfo=UTC)

    assert is_current_window(now, now, now)
    assert is_current_window(now - timedelta(days=1), None, now)
    assert not is_current_window(now + timedelta(seconds=1), None, now)
    assert not is_current_window(now - timedelta(days=30), now - timedelta(microseconds=1), now)
    assert not is_current_window(None, now, now)


def test_add_one_month_clamps_short_months():
    assert add_one_month(datetime(2025, 1, 31, tzinfo=UTC)) == datetime(2025, 2, 28, tzinfo=UTC)
    assert add_one_month(datetime(2024, 1, 31, tzinfo=UTC)) == datetime(2024, 2, 29, tzinfo=UTC)
    assert add_one_month(datetime(2025, 12, 10, tzinfo=UTC)) == datetime(2026, 1, 10, tzinfo=UTC)


def test_parse_datetime_accepts_paddle_format():
    parsed = parse_datetime("2025-03-10T08:15:00.123456Z")

    assert parsed == datetime(2025, 3, 10, 8, 15, 0, 123456, tzinfo=UTC)
    assert parse_datetime("") is None
    assert parse_datetime("not a date") is None


def test_to_iso_normalizes_to_utc_with_microseconds():
    plus_two = timezone(timedelta(hours=2))

    assert to_iso(datetime(2025, 3, 10, 10, 0, tzinfo=plus_two)) == "2025-03-10T08:00:00.000000+00:00"
    assert to_iso(None) is None
