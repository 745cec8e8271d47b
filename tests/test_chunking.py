from __future__ import annotations

from datetime import date, timedelta

import pytest

from main import DateRange, InvalidInputError, InvalidRangeError, chunk_date_range


def test_worked_example_splits_after_six_days() -> None:
    ranges = chunk_date_range(date(2024, 1, 1), date(2024, 1, 10))
    assert ranges == [
        DateRange(date(2024, 1, 1), date(2024, 1, 6)),
        DateRange(date(2024, 1, 7), date(2024, 1, 10)),
    ]


@pytest.mark.parametrize("day", [date(2024, 1, 1), date(2024, 2, 29), date(1999, 12, 31)])
def test_single_day_window(day: date) -> None:
    assert chunk_date_range(day, day) == [DateRange(day, day)]


def test_start_after_end_is_rejected() -> None:
    with pytest.raises(InvalidRangeError) as excinfo:
        chunk_date_range(date(2024, 1, 2), date(2024, 1, 1))
    assert isinstance(excinfo.value, InvalidInputError)
    assert excinfo.value.message == "Invalid date range"


def test_crosses_year_boundary() -> None:
    ranges = chunk_date_range(date(2023, 12, 28), date(2024, 1, 4))
    assert ranges == [
        DateRange(date(2023, 12, 28), date(2024, 1, 2)),
        DateRange(date(2024, 1, 3), date(2024, 1, 4)),
    ]


@pytest.mark.parametrize("width", list(range(0, 40)) + [90, 365, 366])
@pytest.mark.parametrize("start", [date(2024, 1, 1), date(2024, 2, 25), date(2023, 12, 30)])
def test_ranges_cover_window_exactly(start: date, width: int) -> None:
    end = start + timedelta(days=width)
    ranges = chunk_date_range(start, end)

    assert ranges[0].start == start
    assert ranges[-1].end == end
    for chunk in ranges:
        assert chunk.start <= chunk.end
        # inclusive span never exceeds the 7-day feed limit
        assert (chunk.end - chunk.start).days + 1 <= 7
    for previous, following in zip(ranges, ranges[1:]):
        assert following.start == previous.end + timedelta(days=1)

    covered = sum((chunk.end - chunk.start).days + 1 for chunk in ranges)
    assert covered == width + 1


def test_chunking_is_deterministic() -> None:
    start, end = date(2024, 3, 1), date(2024, 5, 17)
    assert chunk_date_range(start, end) == chunk_date_range(start, end)


def test_window_at_end_of_calendar() -> None:
    assert chunk_date_range(date(9999, 12, 30), date(9999, 12, 31)) == [
        DateRange(date(9999, 12, 30), date(9999, 12, 31))
    ]
    assert chunk_date_range(date.max, date.max) == [DateRange(date.max, date.max)]


def test_wide_window_ending_at_date_max() -> None:
    ranges = chunk_date_range(date(9999, 12, 20), date.max)

    assert ranges == [
        DateRange(date(9999, 12, 20), date(9999, 12, 25)),
        DateRange(date(9999, 12, 26), date(9999, 12, 31)),
    ]
