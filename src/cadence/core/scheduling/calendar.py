"""Calendar expressions - parse ``field=value`` definitions and compute fire times.

Manifesto:
    A schedule definition is a list of ``field=value`` lines, the same shape
    operators have always typed into scheduler configuration documents.
    Parsing it once into an immutable value and asking that value for the
    next fire time keeps every timing decision in one testable place.

┌──────────────────────────────────────────────────────────────────────────────┐
│  CALENDAR EXPRESSION                                                          │
│                                                                               │
│   definition lines                    CalendarExpression (frozen)            │
│   ┌────────────────────┐   parse()    ┌────────────────────────────────┐     │
│   │ second=0           │ ───────────► │ second   {0}                   │     │
│   │ minute=30          │              │ minute   {30}                  │     │
│   │ hour=8             │              │ hour     {8}                   │     │
│   │ dayOfWeek=Mon-Fri  │              │ dayOfWeek {1..5}               │     │
│   │ timezone=Europe/.. │              │ timezone, start, end, ADD      │     │
│   │ end=2024/12/31     │              └───────────────┬────────────────┘     │
│   └────────────────────┘                              │                      │
│                                                       ▼                      │
│   next_fire_time(after)                                                       │
│     1. threshold = max(after, start - 1s)                                     │
│     2. croniter("30 8 * * 1,2,3,4,5 0") candidates strictly after threshold   │
│        (shifted back by the ADD offset), skipping disallowed years            │
│     3. apply ADD (months / days) to each candidate                            │
│     4. first adjusted instant > threshold wins; past ``end`` → None           │
└──────────────────────────────────────────────────────────────────────────────┘

Field values:
    - empty, absent or ``*``   wildcard
    - ``5``                     literal
    - ``ACTUAL_MAXIMUM``        field maximum; for dayOfMonth the last day of
                                each candidate month, for year 9999
    - ``1,15`` ``9-17`` ``*/5`` lists, ranges and increments
    - ``Jan`` / ``Mon``         month and weekday abbreviations

Dependencies:
    - croniter: field matching (the 6-field form with trailing seconds)
    - python-dateutil: month arithmetic for ``ADD`` (clamps to month end)

Tags:
    cadence, scheduling, calendar, cron, croniter, fire-time
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadCronError, CroniterBadDateError, croniter
from dateutil.relativedelta import relativedelta

from cadence.core.errors import FormatError
from cadence.core.logging import get_logger

logger = get_logger(__name__)

ACTUAL_MAXIMUM = "ACTUAL_MAXIMUM"
DATE_FORMAT = "%Y/%m/%d"

# Upper bound on candidates discarded because the ADD adjustment moved them
# behind the threshold.
_MAX_SKIPPED_CANDIDATES = 500_000

_MONTH_NAMES = {
    name: index + 1
    for index, name in enumerate(
        ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"]
    )
}
_DAY_NAMES = {
    name: index for index, name in enumerate(["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"])
}

_ADD_FIELDS = {
    "MONTH": "MONTH",
    "DAYOFMONTH": "DAY_OF_MONTH",
    "DAYOFYEAR": "DAY_OF_YEAR",
}


@dataclass(frozen=True)
class _FieldSpec:
    name: str
    low: int
    high: int
    maximum: int | None  # substituted for ACTUAL_MAXIMUM; None = special/unsupported
    names: dict[str, int] | None = None


_FIELDS: dict[str, _FieldSpec] = {
    spec.name: spec
    for spec in (
        _FieldSpec("second", 0, 59, 59),
        _FieldSpec("minute", 0, 59, 59),
        _FieldSpec("hour", 0, 23, 23),
        _FieldSpec("dayOfMonth", 1, 31, None),
        _FieldSpec("month", 1, 12, 12, _MONTH_NAMES),
        _FieldSpec("dayOfWeek", 0, 7, 6, _DAY_NAMES),
        _FieldSpec("year", 1, 9999, 9999),
    )
}
_FIELD_KEYS = {name.lower(): name for name in _FIELDS}

# Sentinel for dayOfMonth=ACTUAL_MAXIMUM (croniter "L")
_LAST_DAY = frozenset({-1})

FieldValues = frozenset[int] | None


def _field_int(spec: _FieldSpec, text: str, directive: str) -> int:
    token = text.strip()
    if spec.names and token.upper() in spec.names:
        return spec.names[token.upper()]
    if token.upper() == ACTUAL_MAXIMUM:
        if spec.maximum is None:
            raise FormatError(
                f"{ACTUAL_MAXIMUM} cannot be combined with other {spec.name} values",
                directive=directive,
            )
        return spec.maximum
    try:
        value = int(token)
    except ValueError:
        raise FormatError(f"Invalid {spec.name} value {token!r}", directive=directive) from None
    if not spec.low <= value <= spec.high:
        raise FormatError(
            f"{spec.name} value {value} out of range {spec.low}-{spec.high}",
            directive=directive,
        )
    return value


def _parse_field(spec: _FieldSpec, raw: str, directive: str) -> FieldValues:
    """Expand one field value into the set of matching integers (None = wildcard)."""
    value = raw.strip()
    if value in ("", "*"):
        return None

    if value.upper() == ACTUAL_MAXIMUM:
        if spec.name == "dayOfMonth":
            return _LAST_DAY
        if spec.maximum is None:
            raise FormatError(f"{ACTUAL_MAXIMUM} is not supported for {spec.name}", directive=directive)
        return frozenset({spec.maximum})

    values: set[int] = set()
    for part in value.split(","):
        part = part.strip()
        if not part:
            raise FormatError(f"Empty element in {spec.name} list", directive=directive)

        base, slash, step_text = part.partition("/")
        step = 1
        if slash:
            step = _field_int(_FieldSpec("step", 1, spec.high or 1, None), step_text, directive)

        if base.strip() == "*":
            low, high = spec.low, spec.high
        elif "-" in base:
            low_text, _, high_text = base.partition("-")
            low = _field_int(spec, low_text, directive)
            high = _field_int(spec, high_text, directive)
            if low > high:
                raise FormatError(f"Invalid {spec.name} range {base!r}", directive=directive)
        else:
            low = _field_int(spec, base, directive)
            high = spec.high if slash else low

        values.update(range(low, high + 1, step))

    if spec.name == "dayOfWeek" and 7 in values:
        values.discard(7)
        values.add(0)
    return frozenset(values)


def _parse_date(value: str, directive: str) -> date:
    try:
        return datetime.strptime(value.strip(), DATE_FORMAT).date()
    except ValueError:
        raise FormatError(
            f"Invalid date {value.strip()!r}, expected yyyy/MM/dd", directive=directive
        ) from None


def _parse_add(value: str, directive: str) -> tuple[str, int]:
    field_name, comma, offset_text = value.partition(",")
    if not comma:
        raise FormatError("ADD expects 'field,offset'", directive=directive)
    normalized = field_name.strip().upper().replace("_", "")
    if normalized not in _ADD_FIELDS:
        raise FormatError(f"Unknown ADD field {field_name.strip()!r}", directive=directive)
    try:
        offset = int(offset_text.strip())
    except ValueError:
        raise FormatError(f"Invalid ADD offset {offset_text.strip()!r}", directive=directive) from None
    return _ADD_FIELDS[normalized], offset


def _render(values: FieldValues) -> str:
    if values is None:
        return "*"
    if values is _LAST_DAY:
        return "L"
    return ",".join(str(v) for v in sorted(values))


@dataclass(frozen=True)
class CalendarExpression:
    """Immutable calendar expression parsed from ``field=value`` directives.

    Example:
        >>> expr = CalendarExpression.parse(["second=0", "minute=0", "hour=8"])
        >>> expr.next_fire_time(datetime(2024, 1, 1, 9, 0, tzinfo=UTC))
        datetime.datetime(2024, 1, 2, 8, 0, tzinfo=datetime.timezone.utc)
    """

    second: FieldValues = None
    minute: FieldValues = None
    hour: FieldValues = None
    day_of_month: FieldValues = None
    month: FieldValues = None
    day_of_week: FieldValues = None
    year: FieldValues = None
    timezone: str = "UTC"
    start: date | None = None
    end: date | None = None
    add: tuple[str, int] | None = None

    # === Parsing ===

    @classmethod
    def parse(
        cls,
        definition: Iterable[str] | str,
        default_timezone: str = "UTC",
    ) -> CalendarExpression:
        """Parse definition lines.

        Unknown keys and lines without ``=`` are ignored.  A later directive
        for the same field replaces an earlier one.

        Raises:
            FormatError: naming the first offending directive.
        """
        lines = definition.splitlines() if isinstance(definition, str) else definition

        fields: dict[str, FieldValues] = {}
        timezone = default_timezone
        start: date | None = None
        end: date | None = None
        add: tuple[str, int] | None = None

        for line in lines:
            directive = (line or "").strip()
            key, equals, value = directive.partition("=")
            if not equals:
                continue
            key = key.strip()
            lowered = key.lower()

            if lowered in _FIELD_KEYS:
                name = _FIELD_KEYS[lowered]
                fields[name] = _parse_field(_FIELDS[name], value, directive)
            elif lowered == "timezone":
                if value.strip():
                    timezone = value.strip()
            elif lowered == "start":
                start = _parse_date(value, directive) if value.strip() else None
            elif lowered == "end":
                end = _parse_date(value, directive) if value.strip() else None
            elif lowered == "add":
                add = _parse_add(value, directive) if value.strip() else None
            else:
                logger.debug("calendar_directive_ignored", directive=directive)

        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise FormatError(f"Unknown timezone {timezone!r}", directive=f"timezone={timezone}") from None

        if start is not None and end is not None and start > end:
            raise FormatError(
                f"start {start:%Y/%m/%d} is after end {end:%Y/%m/%d}",
                directive=f"end={end:%Y/%m/%d}",
            )

        expression = cls(
            second=fields.get("second"),
            minute=fields.get("minute"),
            hour=fields.get("hour"),
            day_of_month=fields.get("dayOfMonth"),
            month=fields.get("month"),
            day_of_week=fields.get("dayOfWeek"),
            year=fields.get("year"),
            timezone=timezone,
            start=start,
            end=end,
            add=add,
        )
        try:
            croniter(expression.cron_expression)
        except CroniterBadCronError as exc:
            raise FormatError(f"Unsupported calendar expression: {exc}", cause=exc) from exc
        return expression

    # === Derived views ===

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def cron_expression(self) -> str:
        """croniter 6-field form: minute hour dom month dow second."""
        return " ".join(
            _render(values)
            for values in (
                self.minute,
                self.hour,
                self.day_of_month,
                self.month,
                self.day_of_week,
                self.second,
            )
        )

    def describe(self) -> str:
        """Render the parsed expression (stored as the configuration's schedule)."""
        parts = [
            f"second={_render(self.second)}",
            f"minute={_render(self.minute)}",
            f"hour={_render(self.hour)}",
            f"dayOfMonth={_render(self.day_of_month).replace('L', ACTUAL_MAXIMUM)}",
            f"month={_render(self.month)}",
            f"dayOfWeek={_render(self.day_of_week)}",
            f"year={_render(self.year)}",
            f"timezone={self.timezone}",
        ]
        if self.start:
            parts.append(f"start={self.start:%Y/%m/%d}")
        if self.end:
            parts.append(f"end={self.end:%Y/%m/%d}")
        if self.add:
            parts.append(f"ADD={self.add[0]},{self.add[1]}")
        return " ".join(parts)

    def __str__(self) -> str:
        return self.describe()

    # === Fire time computation ===

    def next_fire_time(self, after: datetime) -> datetime | None:
        """Earliest fire instant strictly after *after*, in UTC.

        Returns None when no further occurrence exists inside
        ``[start, end]``.
        """
        tz = self.tz
        if after.tzinfo is None:
            after = after.replace(tzinfo=UTC)
        threshold = after.replace(microsecond=0).astimezone(tz)

        start_bound, end_bound = self._bounds(tz)
        if start_bound is not None and threshold < start_bound - timedelta(seconds=1):
            threshold = start_bound - timedelta(seconds=1)

        try:
            search_from = self._shift(threshold, inverse=True)
        except (OverflowError, ValueError):
            return None

        for skipped, candidate in enumerate(self._candidates(search_from)):
            try:
                fire_at = self._shift(candidate)
            except (OverflowError, ValueError):
                return None
            if fire_at <= threshold:
                if skipped > _MAX_SKIPPED_CANDIDATES:
                    logger.warning("calendar_search_exhausted", expression=self.describe())
                    return None
                continue
            if end_bound is not None and fire_at > end_bound:
                return None
            return fire_at.astimezone(UTC)
        return None

    def upcoming(self, after: datetime, count: int) -> list[datetime]:
        """The next *count* fire times after *after* (fewer if the range ends)."""
        result: list[datetime] = []
        current = after
        while len(result) < count:
            fire_at = self.next_fire_time(current)
            if fire_at is None:
                break
            result.append(fire_at)
            current = fire_at
        return result

    def _bounds(self, tz: ZoneInfo) -> tuple[datetime | None, datetime | None]:
        start_bound = (
            datetime(self.start.year, self.start.month, self.start.day, tzinfo=tz)
            if self.start
            else None
        )
        end_bound = (
            datetime(self.end.year, self.end.month, self.end.day, 23, 59, 59, tzinfo=tz)
            if self.end
            else None
        )
        return start_bound, end_bound

    def _shift(self, moment: datetime, inverse: bool = False) -> datetime:
        """Apply the ADD adjustment (or undo it, for the search start)."""
        if self.add is None:
            return moment
        field_name, offset = self.add
        if inverse:
            offset = -offset
        if field_name == "MONTH":
            return moment + relativedelta(months=offset)
        return moment + relativedelta(days=offset)

    def _candidates(self, search_from: datetime) -> Iterator[datetime]:
        """Raw occurrences strictly after *search_from*, restricted to allowed years."""
        tz = self.tz
        start = search_from
        while True:
            if self.year is not None:
                allowed = sorted(y for y in self.year if y >= start.year)
                if not allowed:
                    return
                if allowed[0] > start.year:
                    start = datetime(allowed[0], 1, 1, tzinfo=tz) - timedelta(seconds=1)

            cron = croniter(self.cron_expression, start)
            while True:
                try:
                    candidate = cron.get_next(datetime)
                except CroniterBadDateError:
                    return
                if self.year is None or candidate.year in self.year:
                    yield candidate
                    continue
                later = sorted(y for y in self.year if y > candidate.year)
                if not later:
                    return
                start = datetime(later[0], 1, 1, tzinfo=tz) - timedelta(seconds=1)
                break
