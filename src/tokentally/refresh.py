import asyncio
import time
from dataclasses import replace
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Callable

import structlog

from tokentally import aggregator
from tokentally.config import Config
from tokentally.loader import SessionLoader
from tokentally.metrics import MetricsUpdater
from tokentally.models import AggregatedStats, Session
from tokentally.watcher import MultiDirectoryWatcher

logger = structlog.get_logger()

Subscriber = Callable[[AggregatedStats], None]


def _utcnow() -> "datetime":
    return datetime.now(timezone.utc)


class RefreshController:
    """
    RefreshController keeps the published AggregatedStats fresh. It
    owns the session cache and the dirty flag, and merges two trigger
    sources, debounced directory changes and a periodic timer, into a
    single refresh path that never runs twice at the same time.

    On each refresh the cache is reloaded from disk when the refresh
    is forced, the cache is dirty or empty, or a throttled mtime probe
    finds a file newer than the last reload; otherwise the cached
    sessions are aggregated again. Loading and aggregation run on
    worker threads, the decision path itself stays on the event loop.
    """

    def __init__(
        self,
        loader: "SessionLoader",
        config: "Config",
        metrics: "MetricsUpdater | None" = None,
        clock: "Callable[[], datetime] | None" = None,
        tz: "tzinfo | None" = None,
    ) -> "None":
        self._loader = loader
        self._config = config
        self._metrics = metrics
        self._clock = clock or _utcnow
        self._tz = tz
        self._interval: "int" = config.refresh_interval

        # cache state, only touched by the refresh path
        self._sessions: "list[Session]" = []
        self._dirty: "bool" = True
        self._last_full_reload: "datetime | None" = None
        self._last_probe: "datetime | None" = None

        self._snapshot: "AggregatedStats" = AggregatedStats.empty(
            self._clock(),
            window_hours=config.window_hours,
            token_limit=config.token_limit,
            data_dir_found=loader.root_exists(),
        )
        self._subscribers: "list[Subscriber]" = []
        self._refresh_task: "asyncio.Task[AggregatedStats | None] | None" = None
        self._timer_task: "asyncio.Task[None] | None" = None
        self._started: "bool" = False
        self._stop_event: "asyncio.Event" = asyncio.Event()
        self._watcher = MultiDirectoryWatcher(
            self._on_files_changed,
            debounce_seconds=config.debounce_seconds,
            poll_interval=config.watch_poll_interval,
        )

    @property
    def snapshot(self) -> "AggregatedStats":
        """
        the latest published snapshot. It stays valid until the next
        refresh replaces it.
        """
        return self._snapshot

    @property
    def is_refreshing(self) -> "bool":
        return self._refresh_task is not None

    @property
    def refresh_interval(self) -> "int":
        return self._interval

    @property
    def watched_directories(self) -> "list[Path]":
        return self._watcher.watched

    def subscribe(self, callback: "Subscriber") -> "Callable[[], None]":
        """
        registers callback for every newly published snapshot and
        returns a function that removes it again.
        """
        self._subscribers.append(callback)

        def _unsubscribe() -> "None":
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def mark_dirty(self) -> "None":
        self._dirty = True

    def trigger_refresh(
        self, force: "bool" = False
    ) -> "asyncio.Task[AggregatedStats | None] | None":
        """
        starts a refresh in the background and returns its task. The
        trigger is dropped, returning None, while another refresh is in
        flight. Must be called from the event loop.
        """
        if self._refresh_task is not None:
            logger.debug("refresh_skipped", reason="in_flight", force=force)
            if self._metrics is not None:
                self._metrics.inc_refresh("skipped")
            return None

        task = asyncio.get_running_loop().create_task(self._refresh(force))
        self._refresh_task = task
        return task

    async def refresh(self, force: "bool" = False) -> "AggregatedStats | None":
        """
        triggers a refresh and waits for it. Returns the published
        snapshot, or None when the trigger was dropped or failed.
        """
        task = self.trigger_refresh(force)
        if task is None:
            return None
        return await task

    def set_refresh_interval(self, seconds: "int") -> "None":
        """
        changes the refresh interval and restarts the periodic timer.
        An interval of 0 disables the timer.
        """
        if seconds < 0:
            raise ValueError("refresh interval must not be negative")

        self._interval = seconds
        logger.info("refresh_interval_changed", seconds=seconds)
        if self._started:
            self._start_timer()

    def start(self) -> "None":
        """
        starts the directory watches and the periodic timer and kicks
        off the initial refresh, which always reparses since the cache
        starts empty.
        """
        if self._started:
            return

        self._started = True
        self._watcher.watch(self._watch_targets())
        self.trigger_refresh()
        self._start_timer()

    def stop(self) -> "None":
        """
        signals run() to return.
        """
        self._stop_event.set()

    async def run(self) -> "None":
        """
        runs until stop() is called.
        """
        self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.close()

    async def close(self) -> "None":
        """
        releases the watches and the timer and lets an in-flight
        refresh finish.
        """
        self._stop_timer()
        self._watcher.stop_all()
        self._started = False

        task = self._refresh_task
        if task is not None:
            await asyncio.wait([task])

    def _watch_targets(self) -> "list[Path]":
        if not self._loader.root_exists():
            return []
        return [self._loader.root, *self._loader.project_dirs()]

    def _on_files_changed(self) -> "None":
        self._dirty = True
        self.trigger_refresh()

    def _start_timer(self) -> "None":
        self._stop_timer()
        if self._interval <= 0:
            logger.info("auto_refresh_disabled")
            return

        logger.info("auto_refresh_started", interval=self._interval)
        self._timer_task = asyncio.get_running_loop().create_task(
            self._tick(self._interval)
        )

    def _stop_timer(self) -> "None":
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None

    async def _tick(self, interval: "int") -> "None":
        while True:
            await asyncio.sleep(interval)
            logger.debug("timer_fired")
            self.trigger_refresh()

    async def _probe(self) -> "bool":
        """
        stats the log files at most once per refresh interval and
        reports whether any changed since the last full reload.
        """
        now = self._clock()
        if self._last_probe is not None:
            if (now - self._last_probe).total_seconds() < self._interval:
                return False

        self._last_probe = now
        return await asyncio.to_thread(
            self._loader.modified_since, self._last_full_reload
        )

    async def _refresh(self, force: "bool") -> "AggregatedStats | None":
        cycle_start = time.monotonic()
        logger.info("refresh_started", force=force)

        try:
            reparse = force or self._dirty or not self._sessions
            files_changed = False
            if not reparse:
                files_changed = await self._probe()
                reparse = files_changed

            logger.debug(
                "refresh_decision",
                reparse=reparse,
                dirty=self._dirty,
                files_changed=files_changed,
            )

            if reparse:
                # changes seen while loading must mark the cache dirty again
                self._dirty = False
                reload_started = self._clock()
                sessions = await asyncio.to_thread(self._loader.load_all)
                self._sessions = sessions
                self._last_full_reload = reload_started
                outcome = "reparsed"
                logger.info("sessions_parsed", count=len(sessions))

                if self._started:
                    self._watcher.sync(self._watch_targets())
            else:
                sessions = self._sessions
                outcome = "cached"
                logger.debug("sessions_reused", count=len(sessions))

            stats = await self._aggregate(sessions, self._clock())

        except Exception:
            logger.exception("refresh_failed")
            self._dirty = True
            if self._metrics is not None:
                self._metrics.inc_refresh("failed")
            return None

        finally:
            self._refresh_task = None

        self._publish(stats)

        duration = time.monotonic() - cycle_start
        if self._metrics is not None:
            self._metrics.inc_refresh(outcome)
            self._metrics.observe_refresh_duration(duration)
            self._metrics.set_last_refresh_success(time.time())

        logger.info(
            "refresh_completed",
            outcome=outcome,
            duration=round(duration, 3),
            sessions=stats.session_count,
        )
        return stats

    async def _aggregate(
        self,
        sessions: "list[Session]",
        now: "datetime",
    ) -> "AggregatedStats":
        """
        runs the independent aggregations concurrently on worker
        threads; calendar totals reuse the window and today results.
        """
        events = list(aggregator.flatten(sessions))
        cfg = self._config
        tz = self._tz

        window, today, breakdown, daily, weekly, monthly = await asyncio.gather(
            asyncio.to_thread(
                aggregator.rolling_window,
                events,
                now,
                cfg.window_hours,
                cfg.token_limit,
            ),
            asyncio.to_thread(aggregator.today_stats, events, now, tz),
            asyncio.to_thread(aggregator.daily_breakdown, events, now, tz=tz),
            asyncio.to_thread(aggregator.daily_history, events, now, tz=tz),
            asyncio.to_thread(aggregator.weekly_history, events, now, tz=tz),
            asyncio.to_thread(aggregator.monthly_history, events, now, tz=tz),
        )
        totals = await asyncio.to_thread(
            aggregator.calendar_totals, events, now, window, today, tz
        )

        return replace(
            totals,
            daily_breakdown=tuple(breakdown),
            daily_history=tuple(daily),
            weekly_history=tuple(weekly),
            monthly_history=tuple(monthly),
            session_count=len(sessions),
            data_dir_found=self._loader.root_exists(),
        )

    def _publish(self, stats: "AggregatedStats") -> "None":
        # single assignment, readers never see a partial snapshot
        self._snapshot = stats

        if self._metrics is not None:
            self._metrics.update_stats(stats)

        for callback in list(self._subscribers):
            try:
                callback(stats)
            except Exception:
                logger.exception("subscriber_failed")
