from dataclasses import dataclass
from datetime import datetime, timedelta

from tokentally.pricing import resolve

# assumed token ceiling of one rolling window, an estimate only
DEFAULT_TOKEN_LIMIT = 20_000_000
DEFAULT_WINDOW_HOURS = 5.0


@dataclass(frozen=True, slots=True)
class UsageEvent:
    """
    UsageEvent represents one billable assistant response
    decoded from a session log line.
    """

    uuid: "str"
    # session id current when the line was decoded
    session_id: "str | None"
    # aware UTC instant
    timestamp: "datetime"
    model: "str | None"
    input_tokens: "int" = 0
    output_tokens: "int" = 0
    cache_creation_tokens: "int" = 0
    cache_read_tokens: "int" = 0
    message_id: "str | None" = None
    request_id: "str | None" = None

    @property
    def total_tokens(self) -> "int":
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    @property
    def cost(self) -> "float":
        """
        cost in USD, derived from the pricing table on every access.
        Events without a model have no attributable cost.
        """
        if self.model is None:
            return 0.0

        return resolve(self.model).calculate_cost(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens,
        )

    @property
    def dedup_key(self) -> "str | None":
        """
        composite "{message_id}:{request_id}" key, only defined when
        both ids are present.
        """
        if self.message_id is None or self.request_id is None:
            return None
        return f"{self.message_id}:{self.request_id}"


@dataclass(frozen=True, slots=True)
class Session:
    """
    Session is the ordered sequence of events decoded from one
    log file. Events keep decode order, not timestamp order.
    """

    session_id: "str"
    # project directory name under the data root
    project_path: "str"
    events: "tuple[UsageEvent, ...]"
    start_time: "datetime | None" = None
    end_time: "datetime | None" = None
    source: "str" = ""

    @property
    def total_tokens(self) -> "int":
        return sum(e.total_tokens for e in self.events)

    @property
    def total_cost(self) -> "float":
        return sum(e.cost for e in self.events)


@dataclass(frozen=True, slots=True)
class WindowStats:
    """
    WindowStats holds the totals of the trailing rolling window
    along with the values derived from the reference instant
    (as_of) the window was computed at.
    """

    as_of: "datetime"
    window_hours: "float" = DEFAULT_WINDOW_HOURS
    token_limit: "int" = DEFAULT_TOKEN_LIMIT
    input_tokens: "int" = 0
    output_tokens: "int" = 0
    cache_creation_tokens: "int" = 0
    cache_read_tokens: "int" = 0
    cost: "float" = 0.0
    models: "frozenset[str]" = frozenset()
    # timestamp of the first event inside the window
    window_start: "datetime | None" = None
    last_activity: "datetime | None" = None
    # distinct event ids, a message count rather than a session count
    event_count: "int" = 0

    @property
    def total_tokens(self) -> "int":
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    @property
    def window_seconds(self) -> "float":
        return self.window_hours * 3600

    @property
    def elapsed_seconds(self) -> "float":
        if self.window_start is None:
            return 0.0
        return (self.as_of - self.window_start).total_seconds()

    @property
    def burn_rate(self) -> "float":
        """
        tokens per minute since the window start. Zero until the
        window is older than one minute.
        """
        elapsed = self.elapsed_seconds
        if elapsed <= 60:
            return 0.0
        return self.total_tokens / (elapsed / 60)

    @property
    def projected_cost(self) -> "float":
        """
        cost extrapolated over the full window at the current rate.
        Young windows (one minute or less) are not extrapolated.
        """
        elapsed = self.elapsed_seconds
        if elapsed <= 60:
            return self.cost
        return (self.cost / elapsed) * self.window_seconds

    @property
    def time_remaining(self) -> "timedelta":
        if self.window_start is None:
            return timedelta(seconds=self.window_seconds)
        remaining = self.window_seconds - self.elapsed_seconds
        return timedelta(seconds=max(0.0, remaining))

    @property
    def usage_percentage(self) -> "float":
        return min(100.0, self.total_tokens / self.token_limit * 100)


@dataclass(frozen=True, slots=True)
class DailyStats:
    """
    DailyStats aggregates one local calendar day.
    """

    # day start, or the reference instant for "today"
    date: "datetime"
    total_tokens: "int" = 0
    total_cost: "float" = 0.0
    event_count: "int" = 0
    models: "frozenset[str]" = frozenset()


@dataclass(frozen=True, slots=True)
class HistoryPoint:
    """
    HistoryPoint is one bucket of a history series, used for charting.
    """

    period_start: "datetime"
    total_tokens: "int"
    total_cost: "float"


@dataclass(frozen=True, slots=True)
class AggregatedStats:
    """
    AggregatedStats is a complete, immutable statistics snapshot.
    A new snapshot replaces the previous one on every refresh.
    """

    window: "WindowStats"
    today: "DailyStats"
    this_week: "float" = 0.0
    this_month: "float" = 0.0
    all_time: "float" = 0.0
    daily_breakdown: "tuple[DailyStats, ...]" = ()
    daily_history: "tuple[HistoryPoint, ...]" = ()
    weekly_history: "tuple[HistoryPoint, ...]" = ()
    monthly_history: "tuple[HistoryPoint, ...]" = ()
    session_count: "int" = 0
    generated_at: "datetime | None" = None
    # False when the data root does not exist, as opposed to zero usage
    data_dir_found: "bool" = True

    @classmethod
    def empty(
        cls,
        now: "datetime",
        window_hours: "float" = DEFAULT_WINDOW_HOURS,
        token_limit: "int" = DEFAULT_TOKEN_LIMIT,
        data_dir_found: "bool" = True,
    ) -> "AggregatedStats":
        return cls(
            window=WindowStats(
                as_of=now, window_hours=window_hours, token_limit=token_limit
            ),
            today=DailyStats(date=now),
            generated_at=now,
            data_dir_found=data_dir_found,
        )
