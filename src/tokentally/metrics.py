from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from tokentally.models import AggregatedStats

REFRESH_OUTCOMES = ("reparsed", "cached", "skipped", "failed")


class MetricsUpdater:
    """
    mirrors published AggregatedStats snapshots into Prometheus
    gauges, and tracks the refresh controller's own health.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._window_tokens: "Gauge" = Gauge(
            "tokentally_window_tokens",
            "Tokens used in the rolling window by category",
            ["category"],
            registry=registry,
        )
        self._window_cost: "Gauge" = Gauge(
            "tokentally_window_cost_usd",
            "Cost in USD of the rolling window",
            registry=registry,
        )
        self._window_events: "Gauge" = Gauge(
            "tokentally_window_events",
            "Distinct usage events in the rolling window",
            registry=registry,
        )
        self._window_usage: "Gauge" = Gauge(
            "tokentally_window_usage_percent",
            "Estimated share of the rolling window token limit used",
            registry=registry,
        )
        self._window_burn_rate: "Gauge" = Gauge(
            "tokentally_window_burn_rate_tokens_per_minute",
            "Tokens per minute since the rolling window started",
            registry=registry,
        )
        self._window_projected_cost: "Gauge" = Gauge(
            "tokentally_window_projected_cost_usd",
            "Rolling window cost extrapolated to the full window",
            registry=registry,
        )
        self._cost: "Gauge" = Gauge(
            "tokentally_cost_usd",
            "Cost in USD per calendar period",
            ["period"],
            registry=registry,
        )
        self._today_tokens: "Gauge" = Gauge(
            "tokentally_today_tokens",
            "Tokens used since local midnight",
            registry=registry,
        )
        self._sessions: "Gauge" = Gauge(
            "tokentally_sessions",
            "Session logs with at least one usage event",
            registry=registry,
        )
        self._data_dir_found: "Gauge" = Gauge(
            "tokentally_data_dir_found",
            "1 when the session log directory exists",
            registry=registry,
        )
        self._refreshes: "Counter" = Counter(
            "tokentally_refresh_total",
            "Refresh triggers by outcome",
            ["outcome"],
            registry=registry,
        )
        self._refresh_duration: "Histogram" = Histogram(
            "tokentally_refresh_duration_seconds",
            "Duration of refresh cycles",
            registry=registry,
        )
        self._last_refresh_success: "Gauge" = Gauge(
            "tokentally_last_refresh_success_timestamp_seconds",
            "Unix timestamp of the last published snapshot",
            registry=registry,
        )

    def update_stats(self, stats: "AggregatedStats") -> "None":
        """
        sets every snapshot gauge from the given stats.
        """
        window = stats.window
        self._window_tokens.labels(category="input").set(window.input_tokens)
        self._window_tokens.labels(category="output").set(window.output_tokens)
        self._window_tokens.labels(category="cache_creation").set(
            window.cache_creation_tokens
        )
        self._window_tokens.labels(category="cache_read").set(
            window.cache_read_tokens
        )
        self._window_cost.set(window.cost)
        self._window_events.set(window.event_count)
        self._window_usage.set(window.usage_percentage)
        self._window_burn_rate.set(window.burn_rate)
        self._window_projected_cost.set(window.projected_cost)

        self._cost.labels(period="today").set(stats.today.total_cost)
        self._cost.labels(period="week").set(stats.this_week)
        self._cost.labels(period="month").set(stats.this_month)
        self._cost.labels(period="all_time").set(stats.all_time)
        self._today_tokens.set(stats.today.total_tokens)

        self._sessions.set(stats.session_count)
        self._data_dir_found.set(1 if stats.data_dir_found else 0)

    def inc_refresh(self, outcome: "str") -> "None":
        self._refreshes.labels(outcome=outcome).inc()

    def observe_refresh_duration(self, duration_seconds: "float") -> "None":
        self._refresh_duration.observe(duration_seconds)

    def set_last_refresh_success(self, timestamp: "float") -> "None":
        self._last_refresh_success.set(timestamp)
