from datetime import datetime, timezone

from app.modules.usage.domain.periods import MonthRange, UsageWindow, period_key


def _dt(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_month_range_bounds_and_key():
    month = MonthRange(2024, 12)
    assert month.key == "2024-12"
    assert month.start == _dt(2024, 12, 1)
    assert month.end == _dt(2025, 1, 1)
    assert month.shift(1) == MonthRange(2025, 1)
    assert month.shift(-12) == MonthRange(2023, 12)


def test_month_is_closed_from_the_second_of_next_month():
    march = MonthRange(2024, 3)
    assert not march.is_closed(_dt(2024, 4, 1, 23, 59))
    assert march.is_closed(_dt(2024, 4, 2))


def test_query_end_stops_at_now_for_open_month():
    now = _dt(2024, 3, 15, 12)
    assert MonthRange(2024, 3).query_end(now) == now
    assert MonthRange(2024, 2).query_end(now) == _dt(2024, 3, 1)


def test_usage_window_history_is_ordered_and_includes_previous():
    window = UsageWindow.for_date(_dt(2024, 2, 10), history_months=3)
    assert window.current.key == "2024-02"
    assert window.previous.key == "2024-01"
    assert [m.key for m in window.history] == ["2023-11", "2023-12", "2024-01"]


def test_naive_datetimes_are_treated_as_utc():
    assert MonthRange.containing(datetime(2024, 5, 31, 23)).key == "2024-05"


def test_period_keys():
    now = _dt(2024, 12, 30)
    assert period_key(now, "monthly") == "2024-12"
    # ISO week 1 of 2025 starts on Monday 2024-12-30
    assert period_key(now, "weekly") == "2025-W01"
