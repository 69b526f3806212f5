"""
time-window aggregation of timestamped usage events.

Two different notions of "five hours" live here and must not be mixed up:
the rolling 5h window answers "how much happened in the last five hours",
the billing block answers "when does my next quota reset land". Blocks are
aligned to a fixed schedule, (hour // 5) * 5, independent of activity.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Iterable

from quotawatch.models import TimePoint, make_metric
from quotawatch.snapshot import Contribution

FIVE_HOURS = timedelta(hours=5)
ONE_DAY = timedelta(days=1)
SEVEN_DAYS = timedelta(days=7)
BLOCK_DURATION = timedelta(hours=5)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class UsageEvent:
    """
    UsageEvent is one observed unit of activity: a request, a message,
    a tool call or a token estimate. Naive timestamps are local time.
    """

    timestamp: "datetime | None"
    value: "float" = 1.0
    model: "str" = ""
    input_tokens: "float" = 0.0
    output_tokens: "float" = 0.0
    cost_usd: "float" = 0.0

    @property
    def total_tokens(self) -> "float":
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True, slots=True)
class WindowTotals:
    five_hour: "float" = 0.0
    one_day: "float" = 0.0
    seven_day: "float" = 0.0
    today: "float" = 0.0
    all_time: "float" = 0.0
    # events dropped from every window for lack of a usable timestamp
    excluded: "int" = 0


@dataclass(frozen=True, slots=True)
class BlockWindow:
    start: "datetime"
    end: "datetime"

    def contains(self, ts: "datetime") -> "bool":
        ts = to_aware(ts)
        return self.start <= ts < self.end

    def remaining(self, now: "datetime") -> "timedelta":
        return max(timedelta(0), self.end - to_aware(now))

    def progress(self, now: "datetime") -> "float":
        """
        returns how far into the block `now` is, 0-100.
        """
        elapsed = (to_aware(now) - self.start).total_seconds()
        pct = elapsed / BLOCK_DURATION.total_seconds() * 100
        return min(max(pct, 0.0), 100.0)


def to_aware(ts: "datetime") -> "datetime":
    # naive datetimes are interpreted as local time
    if ts.tzinfo is None:
        return ts.astimezone()
    return ts


def _dated(ts: "datetime | None") -> "datetime | None":
    if ts is None:
        return None
    ts = to_aware(ts)
    if ts <= _EPOCH:
        return None
    return ts


def local_midnight(now: "datetime") -> "datetime":
    """
    returns the start of the calendar day containing `now`, in the
    timezone `now` carries (local time for naive values).
    """
    now = to_aware(now)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def block_window(now: "datetime") -> "BlockWindow":
    """
    returns the fixed-schedule billing block containing `now`.
    """
    now = to_aware(now)
    start = now.replace(hour=(now.hour // 5) * 5, minute=0, second=0, microsecond=0)
    return BlockWindow(start=start, end=start + BLOCK_DURATION)


def _event_value(event: "UsageEvent") -> "float":
    return event.value


def aggregate(
    events: "Iterable[UsageEvent]",
    now: "datetime",
    value: "Callable[[UsageEvent], float]" = _event_value,
    count_undated: "bool" = False,
) -> "WindowTotals":
    """
    sums events into rolling windows measured backward from `now`
    (5h, 1d, 7d), the calendar day ("today") and all-time. An event
    exactly at `now - window` is outside that window.
    """
    now = to_aware(now)
    midnight = local_midnight(now)
    five_hour = one_day = seven_day = today = all_time = 0.0
    excluded = 0

    for event in events:
        amount = value(event)
        ts = _dated(event.timestamp)
        if ts is None:
            excluded += 1
            if count_undated:
                all_time += amount
            continue

        all_time += amount
        if ts > now:
            continue
        age = now - ts
        if age < FIVE_HOURS:
            five_hour += amount
        if age < ONE_DAY:
            one_day += amount
        if age < SEVEN_DAYS:
            seven_day += amount
        if ts >= midnight:
            today += amount

    return WindowTotals(
        five_hour=five_hour,
        one_day=one_day,
        seven_day=seven_day,
        today=today,
        all_time=all_time,
        excluded=excluded,
    )


def daily_series(
    events: "Iterable[UsageEvent]",
    value: "Callable[[UsageEvent], float]" = _event_value,
    tz: "tzinfo | None" = None,
) -> "list[TimePoint]":
    """
    groups dated events by calendar day in `tz` (local time when None)
    and sums them. Returns an empty
    list for an empty stream so callers can tell "no data" from zero.
    """
    totals: "dict[str, float]" = {}
    for event in events:
        ts = _dated(event.timestamp)
        if ts is None:
            continue
        day = ts.astimezone(tz).date().isoformat()
        totals[day] = totals.get(day, 0.0) + value(event)
    return [TimePoint(date=day, value=totals[day]) for day in sorted(totals)]


def apply_windows(
    contribution: "Contribution",
    prefix: "str",
    events: "list[UsageEvent]",
    now: "datetime",
    unit: "str",
    value: "Callable[[UsageEvent], float]" = _event_value,
    series_key: "str | None" = None,
    block_prefix: "str | None" = None,
    group: "str | None" = None,
) -> "WindowTotals":
    """
    writes the standard window metrics for `events` into the
    contribution: {prefix}_five_hour, _one_day, _seven_day, _today and
    _all_time. Optionally appends the per-day series and the billing
    block metric with its reset time and block_start/block_end
    attributes.
    """
    totals = aggregate(events, now, value=value)
    for suffix, window, amount in (
        ("five_hour", "5h", totals.five_hour),
        ("one_day", "1d", totals.one_day),
        ("seven_day", "7d", totals.seven_day),
        ("today", "today", totals.today),
        ("all_time", "all-time", totals.all_time),
    ):
        contribution.set_metric(
            f"{prefix}_{suffix}",
            make_metric(used=amount, unit=unit, window=window),
            group=group,
        )

    if series_key:
        for point in daily_series(events, value=value, tz=to_aware(now).tzinfo):
            contribution.append_daily_point(series_key, point.date, point.value)

    if block_prefix:
        block = block_window(now)
        in_block = sum(
            value(e)
            for e in events
            if _dated(e.timestamp) is not None
            and block.contains(e.timestamp)
            and to_aware(e.timestamp) <= to_aware(now)
        )
        contribution.set_metric(
            block_prefix,
            make_metric(used=in_block, unit=unit, window="block"),
            group=group,
        )
        contribution.set_reset("billing_block", block.end, group=group)
        contribution.set_attribute("block_start", block.start.isoformat())
        contribution.set_attribute("block_end", block.end.isoformat())
        contribution.set_raw("block_progress_pct", f"{block.progress(now):.0f}")

    return totals
