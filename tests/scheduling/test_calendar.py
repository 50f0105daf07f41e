"""Tests for CalendarExpression parsing and fire-time computation."""

from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import pytest

from cadence.core.errors import FormatError
from cadence.core.scheduling.calendar import ACTUAL_MAXIMUM, CalendarExpression


def at(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


class TestParse:
    """Parsing of ``field=value`` definitions."""

    def test_fixed_fields(self):
        """Literal values become single-element sets."""
        expr = CalendarExpression.parse(["second=0", "minute=30", "hour=8"])
        assert expr.second == frozenset({0})
        assert expr.minute == frozenset({30})
        assert expr.hour == frozenset({8})
        assert expr.day_of_month is None
        assert expr.timezone == "UTC"

    def test_wildcards(self):
        """Empty values and ``*`` are wildcards."""
        expr = CalendarExpression.parse(["second=", "minute=*", "hour=1"])
        assert expr.second is None
        assert expr.minute is None

    def test_lists_ranges_and_steps(self):
        expr = CalendarExpression.parse(["minute=*/15", "hour=9-11", "dayOfMonth=1,15"])
        assert expr.minute == frozenset({0, 15, 30, 45})
        assert expr.hour == frozenset({9, 10, 11})
        assert expr.day_of_month == frozenset({1, 15})

    def test_names(self):
        """Month and weekday abbreviations are case-insensitive."""
        expr = CalendarExpression.parse(["month=jan,Dec", "dayOfWeek=Mon-Fri"])
        assert expr.month == frozenset({1, 12})
        assert expr.day_of_week == frozenset({1, 2, 3, 4, 5})

    def test_sunday_as_seven(self):
        """dayOfWeek 7 is folded onto Sunday (0)."""
        expr = CalendarExpression.parse(["dayOfWeek=7"])
        assert expr.day_of_week == frozenset({0})

    def test_actual_maximum(self):
        expr = CalendarExpression.parse(
            [f"hour={ACTUAL_MAXIMUM}", f"month={ACTUAL_MAXIMUM}", f"dayOfWeek={ACTUAL_MAXIMUM}"]
        )
        assert expr.hour == frozenset({23})
        assert expr.month == frozenset({12})
        assert expr.day_of_week == frozenset({6})

    def test_keys_are_case_insensitive(self):
        expr = CalendarExpression.parse(["HOUR=1", "dayofmonth=2", "TimeZone=Europe/Berlin"])
        assert expr.hour == frozenset({1})
        assert expr.day_of_month == frozenset({2})
        assert expr.timezone == "Europe/Berlin"

    def test_unknown_directives_ignored(self):
        """Unknown keys and lines without '=' are skipped."""
        expr = CalendarExpression.parse(["foo=bar", "just text", "", "hour=3"])
        assert expr.hour == frozenset({3})

    def test_later_directive_wins(self):
        expr = CalendarExpression.parse(["hour=3", "hour=4"])
        assert expr.hour == frozenset({4})

    def test_string_definition(self):
        """A newline separated string is accepted."""
        expr = CalendarExpression.parse("second=0\nminute=0\nhour=5")
        assert expr.hour == frozenset({5})

    def test_default_timezone(self):
        expr = CalendarExpression.parse(["hour=1"], default_timezone="America/New_York")
        assert expr.timezone == "America/New_York"
        assert expr.tz == ZoneInfo("America/New_York")

    def test_start_end_and_add(self):
        expr = CalendarExpression.parse(
            ["start=2024/01/01", "end=2024/01/31", "ADD=dayOfMonth,-1"]
        )
        assert expr.start.isoformat() == "2024-01-01"
        assert expr.end.isoformat() == "2024-01-31"
        assert expr.add == ("DAY_OF_MONTH", -1)

    @pytest.mark.parametrize(
        "directive",
        [
            "hour=24",
            "minute=abc",
            "second=-1",
            "month=Foo",
            "dayOfMonth=0",
            "hour=5-3",
            "ADD=WEEK,1",
            "ADD=MONTH",
            "ADD=MONTH,x",
            "timezone=Mars/Olympus_Mons",
            "start=2024-01-01",
        ],
    )
    def test_invalid_directive_raises(self, directive):
        with pytest.raises(FormatError):
            CalendarExpression.parse(["second=0", directive])

    def test_error_names_directive(self):
        with pytest.raises(FormatError) as exc_info:
            CalendarExpression.parse(["second=0", "hour=24"])
        assert exc_info.value.directive == "hour=24"
        assert "hour=24" in str(exc_info.value)

    def test_start_after_end_rejected(self):
        with pytest.raises(FormatError):
            CalendarExpression.parse(["start=2024/02/01", "end=2024/01/01"])

    def test_describe_renders_canonical_form(self):
        expr = CalendarExpression.parse(
            ["second=0", "minute=0", "hour=0", "dayOfMonth=ACTUAL_MAXIMUM", "month=12", "ADD=MONTH,-1"]
        )
        rendered = expr.describe()
        assert "dayOfMonth=ACTUAL_MAXIMUM" in rendered
        assert "month=12" in rendered
        assert "ADD=MONTH,-1" in rendered
        assert str(expr) == rendered


class TestNextFireTime:
    """Fire-time computation."""

    def test_next_day_when_time_passed(self):
        expr = CalendarExpression.parse(["second=0", "minute=30", "hour=8"])
        assert expr.next_fire_time(at(2024, 1, 1, 9, 0)) == at(2024, 1, 2, 8, 30)

    def test_same_day_when_time_ahead(self):
        expr = CalendarExpression.parse(["second=0", "minute=30", "hour=8"])
        assert expr.next_fire_time(at(2024, 1, 1, 7, 0)) == at(2024, 1, 1, 8, 30)

    def test_strictly_after(self):
        """An instant equal to an occurrence yields the following one."""
        expr = CalendarExpression.parse(["second=0", "minute=30", "hour=8"])
        assert expr.next_fire_time(at(2024, 1, 2, 8, 30)) == at(2024, 1, 3, 8, 30)

    def test_sub_second_after(self):
        """Resolution is one second; the result is still strictly after."""
        expr = CalendarExpression.parse(["second=0", "minute=30", "hour=8"])
        after = datetime(2024, 1, 2, 8, 30, 0, 500_000, tzinfo=UTC)
        assert expr.next_fire_time(after) == at(2024, 1, 3, 8, 30)

    def test_wildcard_seconds_fire_every_second(self):
        expr = CalendarExpression.parse(["minute=0", "hour=0"])
        assert expr.next_fire_time(at(2024, 1, 1, 0, 0, 0)) == at(2024, 1, 1, 0, 0, 1)

    def test_result_is_utc(self):
        expr = CalendarExpression.parse(["second=0", "minute=0", "hour=9", "timezone=Europe/Berlin"])
        result = expr.next_fire_time(at(2024, 1, 15, 0, 0))
        assert result.tzinfo == UTC

    def test_timezone_winter_and_summer(self):
        """09:00 Berlin is 08:00 UTC in winter and 07:00 UTC in summer."""
        expr = CalendarExpression.parse(["second=0", "minute=0", "hour=9", "timezone=Europe/Berlin"])
        assert expr.next_fire_time(at(2024, 1, 15, 0, 0)) == at(2024, 1, 15, 8, 0)
        assert expr.next_fire_time(at(2024, 7, 15, 0, 0)) == at(2024, 7, 15, 7, 0)

    def test_naive_after_is_treated_as_utc(self):
        expr = CalendarExpression.parse(["second=0", "minute=0", "hour=6"])
        assert expr.next_fire_time(datetime(2024, 1, 1, 0, 0)) == at(2024, 1, 1, 6, 0)

    def test_day_of_week(self):
        """2024-01-01 is a Monday."""
        expr = CalendarExpression.parse(["second=0", "minute=0", "hour=0", "dayOfWeek=Mon"])
        assert expr.next_fire_time(at(2024, 1, 1, 0, 0)) == at(2024, 1, 8, 0, 0)

    def test_day_of_week_seven_is_sunday(self):
        expr = CalendarExpression.parse(["second=0", "minute=0", "hour=0", "dayOfWeek=7"])
        assert expr.next_fire_time(at(2024, 1, 1, 0, 0)) == at(2024, 1, 7, 0, 0)

    def test_actual_maximum_per_month(self):
        """dayOfMonth=ACTUAL_MAXIMUM is the last day of every month, leap years included."""
        expr = CalendarExpression.parse(
            ["second=0", "minute=0", "hour=12", "dayOfMonth=ACTUAL_MAXIMUM"]
        )
        assert expr.upcoming(at(2024, 1, 15, 0, 0), 4) == [
            at(2024, 1, 31, 12, 0),
            at(2024, 2, 29, 12, 0),
            at(2024, 3, 31, 12, 0),
            at(2024, 4, 30, 12, 0),
        ]

    def test_year_restriction(self):
        expr = CalendarExpression.parse(
            ["second=0", "minute=0", "hour=0", "dayOfMonth=1", "month=1", "year=2026"]
        )
        assert expr.next_fire_time(at(2024, 6, 1, 0, 0)) == at(2026, 1, 1, 0, 0)
        assert expr.next_fire_time(at(2026, 1, 1, 0, 0)) is None

    def test_year_actual_maximum_is_last_supported_year(self):
        expr = CalendarExpression.parse(
            ["second=0", "minute=0", "hour=0", "dayOfMonth=1", "month=1", "year=ACTUAL_MAXIMUM"]
        )
        assert expr.year == frozenset({9999})
        assert expr.next_fire_time(at(2024, 6, 1, 0, 0)) == at(9999, 1, 1, 0, 0)

    def test_past_year_has_no_occurrence(self):
        expr = CalendarExpression.parse(["second=0", "minute=0", "hour=0", "year=2023"])
        assert expr.next_fire_time(at(2024, 1, 1, 0, 0)) is None

    def test_add_month_clamps_to_month_end(self):
        """Dec 31 minus one month is Nov 30."""
        expr = CalendarExpression.parse(
            [
                "second=0",
                "minute=0",
                "hour=0",
                "dayOfMonth=ACTUAL_MAXIMUM",
                "month=12",
                "ADD=MONTH,-1",
            ]
        )
        assert expr.next_fire_time(at(2024, 1, 1, 0, 0)) == at(2024, 11, 30, 0, 0)

    def test_add_days(self):
        """The first of each month minus one day is the last of the previous one."""
        expr = CalendarExpression.parse(
            ["second=0", "minute=0", "hour=0", "dayOfMonth=1", "ADD=DAY_OF_MONTH,-1"]
        )
        assert expr.next_fire_time(at(2024, 1, 15, 0, 0)) == at(2024, 1, 31, 0, 0)
        assert expr.next_fire_time(at(2024, 1, 31, 0, 0)) == at(2024, 2, 29, 0, 0)

    def test_add_day_of_year_positive(self):
        expr = CalendarExpression.parse(
            ["second=0", "minute=0", "hour=0", "dayOfMonth=1", "month=1", "ADD=DAY_OF_YEAR,9"]
        )
        assert expr.next_fire_time(at(2024, 1, 1, 0, 0)) == at(2024, 1, 10, 0, 0)


class TestBounds:
    """start / end limit the occurrences."""

    DAILY_JANUARY = [
        "second=0",
        "minute=0",
        "hour=6",
        "start=2024/01/01",
        "end=2024/01/31",
    ]

    def test_start_is_inclusive_from_midnight(self):
        expr = CalendarExpression.parse(self.DAILY_JANUARY)
        assert expr.next_fire_time(at(2023, 12, 1, 0, 0)) == at(2024, 1, 1, 6, 0)

    def test_nothing_after_end(self):
        expr = CalendarExpression.parse(self.DAILY_JANUARY)
        occurrences = expr.upcoming(at(2023, 12, 31, 0, 0), 100)
        assert len(occurrences) == 31
        assert all(o < at(2024, 2, 1, 0, 0) for o in occurrences)
        assert occurrences[-1] == at(2024, 1, 31, 6, 0)

    def test_none_after_last_occurrence(self):
        expr = CalendarExpression.parse(self.DAILY_JANUARY)
        assert expr.next_fire_time(at(2024, 1, 31, 6, 0)) is None

    def test_end_day_is_inclusive(self):
        expr = CalendarExpression.parse(["second=0", "minute=59", "hour=23", "end=2024/01/31"])
        assert expr.next_fire_time(at(2024, 1, 31, 12, 0)) == at(2024, 1, 31, 23, 59)
        assert expr.next_fire_time(at(2024, 1, 31, 23, 59)) is None

    def test_bounds_use_expression_timezone(self):
        """end is the whole local day: 23:00 Tokyo on Jan 31 is 14:00 UTC."""
        expr = CalendarExpression.parse(
            ["second=0", "minute=0", "hour=23", "end=2024/01/31", "timezone=Asia/Tokyo"]
        )
        assert expr.next_fire_time(at(2024, 1, 31, 0, 0)) == at(2024, 1, 31, 14, 0)
        assert expr.next_fire_time(at(2024, 1, 31, 14, 0)) is None


class TestOccurrenceProperties:
    """Every computed occurrence is strictly later and matches the fixed fields."""

    @pytest.mark.parametrize(
        "definition",
        [
            ["second=0", "minute=*/7", "hour=9-17", "dayOfWeek=Mon-Fri"],
            ["second=15", "minute=0", "hour=0", "dayOfMonth=ACTUAL_MAXIMUM"],
            ["second=0", "minute=30", "hour=4", "timezone=America/New_York"],
        ],
    )
    def test_upcoming_is_increasing_and_consistent(self, definition):
        expr = CalendarExpression.parse(definition)
        after = at(2024, 3, 1, 0, 0)
        previous = after
        for fire_at in expr.upcoming(after, 25):
            assert fire_at > previous
            local = fire_at.astimezone(expr.tz)
            assert expr.second is None or local.second in expr.second
            assert expr.minute is None or local.minute in expr.minute
            assert expr.hour is None or local.hour in expr.hour
            previous = fire_at
