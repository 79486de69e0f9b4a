import asyncio
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest
from prometheus_client import CollectorRegistry

from tokentally.config import Config
from tokentally.loader import SessionLoader
from tokentally.metrics import MetricsUpdater
from tokentally.models import AggregatedStats, Session
from tokentally.refresh import RefreshController


class CountingLoader(SessionLoader):
    """
    A loader that counts full loads and can be made to block or fail.
    """

    def __init__(self, root: "Path") -> "None":
        super().__init__(root)
        self.loads = 0
        self.fail = False
        self.gate: "threading.Event | None" = None

    def load_all(self) -> "list[Session]":
        self.loads += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail:
            raise RuntimeError("load failed")
        return super().load_all()


class FakeClock:
    def __init__(self) -> "None":
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> "datetime":
        return self.now

    def advance(self, seconds: "float") -> "None":
        self.now += timedelta(seconds=seconds)


def _set_mtime(path: "Path", offset: "float") -> "None":
    ts = time.time() + offset
    os.utime(path, (ts, ts))


async def _wait_for(predicate: "Callable[[], bool]", timeout: "float" = 3.0) -> "None":
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _refreshes(registry: "CollectorRegistry", outcome: "str") -> "float | None":
    return registry.get_sample_value("tokentally_refresh_total", {"outcome": outcome})


@pytest.fixture()
def session_file(
    write_session: "Callable[[str, str, list[str]], Path]",
    assistant_line: "Callable[..., str]",
) -> "Path":
    path = write_session("proj", "s1.jsonl", [assistant_line()])
    _set_mtime(path, -1000)
    return path


def _controller(
    loader: "SessionLoader",
    registry: "CollectorRegistry | None" = None,
    clock: "Callable[[], datetime] | None" = None,
    **overrides: "object",
) -> "RefreshController":
    settings: "dict[str, object]" = {
        "projects_dir": loader.root,
        "refresh_interval": 10,
        "debounce_seconds": 0.05,
        "watch_poll_interval": 0.01,
    }
    settings.update(overrides)
    metrics = MetricsUpdater(registry=registry) if registry is not None else None
    return RefreshController(
        loader, Config(**settings), metrics, clock=clock, tz=timezone.utc
    )


class TestRefresh:
    @pytest.mark.asyncio
    async def test_first_refresh_reparses_and_publishes(
        self,
        projects_dir: "Path",
        session_file: "Path",
        registry: "CollectorRegistry",
    ) -> "None":
        loader = CountingLoader(projects_dir)
        controller = _controller(loader, registry)
        published: "list[AggregatedStats]" = []
        controller.subscribe(published.append)

        stats = await controller.refresh()

        assert stats is not None
        assert loader.loads == 1
        assert controller.snapshot is stats
        assert published == [stats]
        assert stats.session_count == 1
        assert stats.data_dir_found is True
        assert _refreshes(registry, "reparsed") == 1.0
        assert registry.get_sample_value("tokentally_sessions") == 1.0

    @pytest.mark.asyncio
    async def test_unchanged_files_reuse_cache(
        self,
        projects_dir: "Path",
        session_file: "Path",
        registry: "CollectorRegistry",
    ) -> "None":
        loader = CountingLoader(projects_dir)
        controller = _controller(loader, registry)

        first = await controller.refresh()
        second = await controller.refresh()

        assert loader.loads == 1
        assert first is not None and second is not None
        assert second is not first
        assert second.session_count == 1
        assert _refreshes(registry, "cached") == 1.0

    @pytest.mark.asyncio
    async def test_probe_detects_newer_file(
        self,
        projects_dir: "Path",
        session_file: "Path",
    ) -> "None":
        loader = CountingLoader(projects_dir)
        controller = _controller(loader)

        await controller.refresh()
        _set_mtime(session_file, 1000)
        await controller.refresh()

        assert loader.loads == 2

    @pytest.mark.asyncio
    async def test_probe_is_throttled_by_interval(
        self,
        projects_dir: "Path",
        session_file: "Path",
    ) -> "None":
        loader = CountingLoader(projects_dir)
        clock = FakeClock()
        controller = _controller(loader, clock=clock, refresh_interval=10)

        await controller.refresh()
        # probes and finds nothing
        await controller.refresh()
        assert loader.loads == 1

        _set_mtime(session_file, 1000)
        clock.advance(5)
        await controller.refresh()
        assert loader.loads == 1

        clock.advance(10)
        await controller.refresh()
        assert loader.loads == 2

    @pytest.mark.asyncio
    async def test_dirty_and_force_reparse(
        self,
        projects_dir: "Path",
        session_file: "Path",
    ) -> "None":
        loader = CountingLoader(projects_dir)
        controller = _controller(loader)

        await controller.refresh()
        controller.mark_dirty()
        await controller.refresh()
        assert loader.loads == 2

        await controller.refresh(force=True)
        assert loader.loads == 3

    @pytest.mark.asyncio
    async def test_concurrent_trigger_is_dropped(
        self,
        projects_dir: "Path",
        session_file: "Path",
        registry: "CollectorRegistry",
    ) -> "None":
        loader = CountingLoader(projects_dir)
        loader.gate = threading.Event()
        controller = _controller(loader, registry)
        published: "list[AggregatedStats]" = []
        controller.subscribe(published.append)

        task = controller.trigger_refresh()
        assert task is not None
        assert controller.is_refreshing is True

        assert controller.trigger_refresh(force=True) is None
        assert await controller.refresh() is None

        loader.gate.set()
        await task

        assert controller.is_refreshing is False
        assert loader.loads == 1
        assert len(published) == 1
        assert _refreshes(registry, "skipped") == 2.0

    @pytest.mark.asyncio
    async def test_empty_root_publishes_zero_stats(
        self,
        projects_dir: "Path",
        registry: "CollectorRegistry",
    ) -> "None":
        controller = _controller(SessionLoader(projects_dir), registry)

        stats = await controller.refresh()

        assert stats is not None
        assert stats.data_dir_found is True
        assert stats.session_count == 0
        assert stats.all_time == 0.0
        assert registry.get_sample_value("tokentally_data_dir_found") == 1.0

    @pytest.mark.asyncio
    async def test_missing_root_is_reported(
        self,
        tmp_path: "Path",
        registry: "CollectorRegistry",
    ) -> "None":
        controller = _controller(SessionLoader(tmp_path / "missing"), registry)
        assert controller.snapshot.data_dir_found is False

        stats = await controller.refresh()

        assert stats is not None
        assert stats.data_dir_found is False
        assert stats.window.total_tokens == 0
        assert registry.get_sample_value("tokentally_data_dir_found") == 0.0

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_snapshot_and_retries(
        self,
        projects_dir: "Path",
        session_file: "Path",
        registry: "CollectorRegistry",
    ) -> "None":
        loader = CountingLoader(projects_dir)
        controller = _controller(loader, registry)
        first = await controller.refresh()

        loader.fail = True
        assert await controller.refresh(force=True) is None
        assert controller.snapshot is first
        assert controller.is_refreshing is False
        assert _refreshes(registry, "failed") == 1.0

        # the failure leaves the cache dirty, the next refresh reparses
        loader.fail = False
        third = await controller.refresh()
        assert third is not None
        assert loader.loads == 3
        assert controller.snapshot is third

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_others(
        self,
        projects_dir: "Path",
        session_file: "Path",
    ) -> "None":
        controller = _controller(CountingLoader(projects_dir))
        published: "list[AggregatedStats]" = []

        def _broken(stats: "AggregatedStats") -> "None":
            raise ValueError("subscriber bug")

        controller.subscribe(_broken)
        controller.subscribe(published.append)

        stats = await controller.refresh()

        assert published == [stats]
        assert controller.snapshot is stats

    @pytest.mark.asyncio
    async def test_unsubscribe(
        self,
        projects_dir: "Path",
        session_file: "Path",
    ) -> "None":
        controller = _controller(CountingLoader(projects_dir))
        published: "list[AggregatedStats]" = []
        unsubscribe = controller.subscribe(published.append)

        await controller.refresh()
        unsubscribe()
        unsubscribe()
        await controller.refresh()

        assert len(published) == 1

    @pytest.mark.asyncio
    async def test_metrics_mirror_snapshot(
        self,
        projects_dir: "Path",
        write_session: "Callable[[str, str, list[str]], Path]",
        assistant_line: "Callable[..., str]",
        registry: "CollectorRegistry",
    ) -> "None":
        now = datetime.now(timezone.utc)
        timestamp = (now - timedelta(minutes=30)).strftime("%Y-%m-%dT%H:%M:%S.000Z")
        write_session(
            "proj",
            "s.jsonl",
            [
                assistant_line(
                    model="claude-opus-4-5-20251101",
                    timestamp=timestamp,
                    input_tokens=1000,
                    output_tokens=1000,
                )
            ],
        )
        controller = _controller(SessionLoader(projects_dir), registry)

        await controller.refresh()

        assert registry.get_sample_value(
            "tokentally_window_tokens", {"category": "input"}
        ) == 1000.0
        assert registry.get_sample_value("tokentally_window_cost_usd") == pytest.approx(
            0.03
        )
        assert registry.get_sample_value(
            "tokentally_cost_usd", {"period": "all_time"}
        ) == pytest.approx(0.03)
        assert registry.get_sample_value("tokentally_window_events") == 1.0
        assert registry.get_sample_value(
            "tokentally_refresh_duration_seconds_count"
        ) == 1.0
        assert registry.get_sample_value(
            "tokentally_last_refresh_success_timestamp_seconds"
        ) > 0


class TestRefreshInterval:
    @pytest.mark.asyncio
    async def test_negative_interval_is_rejected(self, projects_dir: "Path") -> "None":
        controller = _controller(SessionLoader(projects_dir))

        with pytest.raises(ValueError):
            controller.set_refresh_interval(-1)
        assert controller.refresh_interval == 10

    @pytest.mark.asyncio
    async def test_interval_change_restarts_timer(self, projects_dir: "Path") -> "None":
        controller = _controller(SessionLoader(projects_dir))
        controller.start()
        try:
            first_timer = controller._timer_task
            assert first_timer is not None

            controller.set_refresh_interval(30)
            assert controller.refresh_interval == 30
            assert controller._timer_task is not None
            assert controller._timer_task is not first_timer

            controller.set_refresh_interval(0)
            assert controller._timer_task is None
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_interval_before_start_only_stores_value(
        self, projects_dir: "Path"
    ) -> "None":
        controller = _controller(SessionLoader(projects_dir))

        controller.set_refresh_interval(3)

        assert controller.refresh_interval == 3
        assert controller._timer_task is None

    @pytest.mark.asyncio
    async def test_timer_triggers_refresh(
        self,
        projects_dir: "Path",
        session_file: "Path",
    ) -> "None":
        controller = _controller(CountingLoader(projects_dir), refresh_interval=1)
        published: "list[AggregatedStats]" = []
        controller.subscribe(published.append)

        controller.start()
        try:
            await _wait_for(lambda: len(published) >= 2, timeout=4.0)
        finally:
            await controller.close()


class TestWatching:
    @pytest.mark.asyncio
    async def test_start_watches_root_and_projects(
        self,
        projects_dir: "Path",
        session_file: "Path",
    ) -> "None":
        controller = _controller(CountingLoader(projects_dir), refresh_interval=0)
        controller.start()
        try:
            assert controller.watched_directories == sorted(
                [projects_dir, projects_dir / "proj"]
            )
        finally:
            await controller.close()

        assert controller.watched_directories == []

    @pytest.mark.asyncio
    async def test_missing_root_is_not_watched(self, tmp_path: "Path") -> "None":
        controller = _controller(SessionLoader(tmp_path / "missing"), refresh_interval=0)
        controller.start()
        try:
            assert controller.watched_directories == []
            await _wait_for(lambda: not controller.is_refreshing)
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_new_session_file_triggers_refresh(
        self,
        projects_dir: "Path",
        session_file: "Path",
        write_session: "Callable[[str, str, list[str]], Path]",
        assistant_line: "Callable[..., str]",
    ) -> "None":
        loader = CountingLoader(projects_dir)
        controller = _controller(loader, refresh_interval=0)
        controller.start()
        try:
            await _wait_for(lambda: controller.snapshot.session_count == 1)

            write_session("proj", "s2.jsonl", [assistant_line(message_id="m2")])
            await _wait_for(lambda: controller.snapshot.session_count == 2)
        finally:
            await controller.close()

        assert loader.loads >= 2

    @pytest.mark.asyncio
    async def test_new_project_directory_is_picked_up(
        self,
        projects_dir: "Path",
        session_file: "Path",
        write_session: "Callable[[str, str, list[str]], Path]",
        assistant_line: "Callable[..., str]",
    ) -> "None":
        controller = _controller(CountingLoader(projects_dir), refresh_interval=0)
        controller.start()
        try:
            await _wait_for(lambda: controller.snapshot.session_count == 1)

            write_session("other", "s.jsonl", [assistant_line(message_id="m9")])
            await _wait_for(lambda: controller.snapshot.session_count == 2)
            await _wait_for(
                lambda: projects_dir / "other" in controller.watched_directories
            )
        finally:
            await controller.close()


class TestRun:
    @pytest.mark.asyncio
    async def test_run_until_stopped(
        self,
        projects_dir: "Path",
        session_file: "Path",
    ) -> "None":
        controller = _controller(CountingLoader(projects_dir))
        published: "list[AggregatedStats]" = []
        controller.subscribe(published.append)

        task = asyncio.create_task(controller.run())
        await _wait_for(lambda: len(published) == 1)

        controller.stop()
        await asyncio.wait_for(task, timeout=3.0)

        assert controller.watched_directories == []
        assert controller._timer_task is None
