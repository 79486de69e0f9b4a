"""
Pure aggregation functions over usage events.

Every function takes the events and a reference instant (now) and
never reads the clock itself. Calendar boundaries (days, Monday
weeks, months) are computed in tz, the system local zone when tz is
None.
"""

from collections import defaultdict
from dataclasses import replace
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Callable, Iterable, Iterator

from tokentally.models import (
    DEFAULT_TOKEN_LIMIT,
    DEFAULT_WINDOW_HOURS,
    AggregatedStats,
    DailyStats,
    HistoryPoint,
    Session,
    UsageEvent,
    WindowStats,
)

DEFAULT_BREAKDOWN_DAYS = 7
DEFAULT_HISTORY_DAYS = 7
DEFAULT_HISTORY_WEEKS = 8
DEFAULT_HISTORY_MONTHS = 6


def flatten(sessions: "Iterable[Session]") -> "Iterator[UsageEvent]":
    for session in sessions:
        yield from session.events


def _local_date(instant: "datetime", tz: "tzinfo | None") -> "date":
    return instant.astimezone(tz).date()


def _midnight(day: "date", tz: "tzinfo | None") -> "datetime":
    """
    returns the instant of local midnight starting day.
    """
    if tz is None:
        # a naive value is interpreted as system local time
        return datetime.combine(day, time()).astimezone()
    return datetime.combine(day, time(), tzinfo=tz)


def _week_start_date(day: "date") -> "date":
    return day - timedelta(days=day.weekday())


def _month_start_date(day: "date") -> "date":
    return day.replace(day=1)


def _months_back(day: "date", months: "int") -> "date":
    index = day.year * 12 + (day.month - 1) - months
    return date(index // 12, index % 12 + 1, 1)


def start_of_day(now: "datetime", tz: "tzinfo | None" = None) -> "datetime":
    return _midnight(_local_date(now, tz), tz)


def start_of_week(now: "datetime", tz: "tzinfo | None" = None) -> "datetime":
    """
    Monday 00:00 local time of the week containing now.
    """
    return _midnight(_week_start_date(_local_date(now, tz)), tz)


def start_of_month(now: "datetime", tz: "tzinfo | None" = None) -> "datetime":
    return _midnight(_month_start_date(_local_date(now, tz)), tz)


def rolling_window(
    events: "Iterable[UsageEvent]",
    now: "datetime",
    window_hours: "float" = DEFAULT_WINDOW_HOURS,
    token_limit: "int" = DEFAULT_TOKEN_LIMIT,
) -> "WindowStats":
    """
    totals of every event at or after now - window_hours. The window
    starts at the first surviving event, not at the cutoff.
    """
    cutoff = now - timedelta(hours=window_hours)
    in_window = sorted(
        (e for e in events if e.timestamp >= cutoff),
        key=lambda e: e.timestamp,
    )

    input_tokens = output_tokens = cache_creation = cache_read = 0
    cost = 0.0
    models: "set[str]" = set()
    for e in in_window:
        input_tokens += e.input_tokens
        output_tokens += e.output_tokens
        cache_creation += e.cache_creation_tokens
        cache_read += e.cache_read_tokens
        cost += e.cost
        if e.model is not None:
            models.add(e.model)

    return WindowStats(
        as_of=now,
        window_hours=window_hours,
        token_limit=token_limit,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_creation_tokens=cache_creation,
        cache_read_tokens=cache_read,
        cost=cost,
        models=frozenset(models),
        window_start=in_window[0].timestamp if in_window else None,
        last_activity=in_window[-1].timestamp if in_window else None,
        event_count=len({e.uuid for e in in_window}),
    )


def today_stats(
    events: "Iterable[UsageEvent]",
    now: "datetime",
    tz: "tzinfo | None" = None,
) -> "DailyStats":
    midnight = start_of_day(now, tz)
    total_tokens = 0
    total_cost = 0.0
    count = 0
    models: "set[str]" = set()

    for e in sorted(
        (e for e in events if e.timestamp >= midnight), key=lambda e: e.timestamp
    ):
        total_tokens += e.total_tokens
        total_cost += e.cost
        count += 1
        if e.model is not None:
            models.add(e.model)

    return DailyStats(
        date=now,
        total_tokens=total_tokens,
        total_cost=total_cost,
        event_count=count,
        models=frozenset(models),
    )


def calendar_totals(
    events: "Iterable[UsageEvent]",
    now: "datetime",
    window: "WindowStats | None" = None,
    today: "DailyStats | None" = None,
    tz: "tzinfo | None" = None,
) -> "AggregatedStats":
    """
    week, month and all-time cost in a single pass. The window and
    today results are reused when given and computed otherwise.
    """
    events = list(events)
    if window is None:
        window = rolling_window(events, now)
    if today is None:
        today = today_stats(events, now, tz)

    week_start = start_of_week(now, tz)
    month_start = start_of_month(now, tz)
    week_cost = 0.0
    month_cost = 0.0
    all_time_cost = 0.0

    for e in events:
        cost = e.cost
        all_time_cost += cost
        if e.timestamp >= month_start:
            month_cost += cost
        if e.timestamp >= week_start:
            week_cost += cost

    return AggregatedStats(
        window=window,
        today=today,
        this_week=week_cost,
        this_month=month_cost,
        all_time=all_time_cost,
        generated_at=now,
    )


def daily_breakdown(
    events: "Iterable[UsageEvent]",
    now: "datetime",
    days: "int" = DEFAULT_BREAKDOWN_DAYS,
    tz: "tzinfo | None" = None,
) -> "list[DailyStats]":
    """
    per local day totals of the last days days, newest first.
    """
    tokens: "dict[date, int]" = defaultdict(int)
    costs: "dict[date, float]" = defaultdict(float)
    counts: "dict[date, int]" = defaultdict(int)
    models: "dict[date, set[str]]" = defaultdict(set)

    for e in events:
        day = _local_date(e.timestamp, tz)
        tokens[day] += e.total_tokens
        costs[day] += e.cost
        counts[day] += 1
        if e.model is not None:
            models[day].add(e.model)

    cutoff = now - timedelta(days=days)
    result: "list[DailyStats]" = []
    for day in tokens:
        day_start = _midnight(day, tz)
        if day_start < cutoff:
            continue
        result.append(
            DailyStats(
                date=day_start,
                total_tokens=tokens[day],
                total_cost=costs[day],
                event_count=counts[day],
                models=frozenset(models[day]),
            )
        )

    result.sort(key=lambda d: d.date, reverse=True)
    return result


def _history(
    events: "Iterable[UsageEvent]",
    range_start: "date",
    bucket_of: "Callable[[date], date]",
    tz: "tzinfo | None",
) -> "list[HistoryPoint]":
    """
    buckets events by bucket_of(local date), dropping buckets that
    start before range_start. Empty periods are not filled in.
    """
    tokens: "dict[date, int]" = defaultdict(int)
    costs: "dict[date, float]" = defaultdict(float)

    for e in events:
        key = bucket_of(_local_date(e.timestamp, tz))
        if key < range_start:
            continue
        tokens[key] += e.total_tokens
        costs[key] += e.cost

    return [
        HistoryPoint(
            period_start=_midnight(key, tz),
            total_tokens=tokens[key],
            total_cost=costs[key],
        )
        for key in sorted(tokens)
    ]


def daily_history(
    events: "Iterable[UsageEvent]",
    now: "datetime",
    days: "int" = DEFAULT_HISTORY_DAYS,
    tz: "tzinfo | None" = None,
) -> "list[HistoryPoint]":
    start = _local_date(now, tz) - timedelta(days=days - 1)
    return _history(events, start, lambda d: d, tz)


def weekly_history(
    events: "Iterable[UsageEvent]",
    now: "datetime",
    weeks: "int" = DEFAULT_HISTORY_WEEKS,
    tz: "tzinfo | None" = None,
) -> "list[HistoryPoint]":
    start = _week_start_date(_local_date(now, tz)) - timedelta(weeks=weeks - 1)
    return _history(events, start, _week_start_date, tz)


def monthly_history(
    events: "Iterable[UsageEvent]",
    now: "datetime",
    months: "int" = DEFAULT_HISTORY_MONTHS,
    tz: "tzinfo | None" = None,
) -> "list[HistoryPoint]":
    start = _months_back(_local_date(now, tz), months - 1)
    return _history(events, start, _month_start_date, tz)


def aggregate(
    sessions: "Iterable[Session]",
    now: "datetime",
    window_hours: "float" = DEFAULT_WINDOW_HOURS,
    token_limit: "int" = DEFAULT_TOKEN_LIMIT,
    tz: "tzinfo | None" = None,
    data_dir_found: "bool" = True,
) -> "AggregatedStats":
    """
    computes a full snapshot sequentially. RefreshController runs the
    same steps concurrently.
    """
    sessions = list(sessions)
    events = list(flatten(sessions))

    window = rolling_window(events, now, window_hours, token_limit)
    today = today_stats(events, now, tz)
    stats = calendar_totals(events, now, window=window, today=today, tz=tz)

    return replace(
        stats,
        daily_breakdown=tuple(daily_breakdown(events, now, tz=tz)),
        daily_history=tuple(daily_history(events, now, tz=tz)),
        weekly_history=tuple(weekly_history(events, now, tz=tz)),
        monthly_history=tuple(monthly_history(events, now, tz=tz)),
        session_count=len(sessions),
        data_dir_found=data_dir_found,
    )
