import asyncio
import os
from pathlib import Path
from typing import Callable, Iterable

import structlog

logger = structlog.get_logger()

_DEFAULT_DEBOUNCE_SECONDS = 0.5
_DEFAULT_POLL_INTERVAL_SECONDS = 1.0


def snapshot_directory(path: "Path") -> "dict[str, tuple[int, int]]":
    """
    records name, mtime and size of every entry in path. Raises
    OSError when the directory itself cannot be read.
    """
    entries: "dict[str, tuple[int, int]]" = {}
    with os.scandir(path) as it:
        for entry in it:
            try:
                st = entry.stat()
            except OSError:
                # removed between listing and stat
                continue
            entries[entry.name] = (st.st_mtime_ns, st.st_size)
    return entries


class DirectoryWatch:
    """
    DirectoryWatch owns one watch subscription: an asyncio task that
    polls a single directory and calls on_change whenever an entry
    is added, removed or modified.
    """

    def __init__(
        self,
        path: "Path",
        on_change: "Callable[[Path], None]",
        poll_interval: "float" = _DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> "None":
        self._path = path
        self._on_change = on_change
        self._poll_interval = poll_interval
        self._entries: "dict[str, tuple[int, int]]" = {}
        self._task: "asyncio.Task[None] | None" = None

    @property
    def path(self) -> "Path":
        return self._path

    @property
    def is_watching(self) -> "bool":
        return self._task is not None and not self._task.done()

    def start(self) -> "None":
        """
        takes the initial snapshot and starts polling. Must be called
        from a running event loop; raises OSError if the directory
        cannot be read.
        """
        if self.is_watching:
            return

        self._entries = snapshot_directory(self._path)
        self._task = asyncio.get_running_loop().create_task(self._poll())
        logger.debug("watch_started", path=str(self._path))

    def stop(self) -> "None":
        """
        cancels the polling task, releasing the watch.
        """
        if self._task is None:
            return

        self._task.cancel()
        self._task = None
        logger.debug("watch_stopped", path=str(self._path))

    async def _poll(self) -> "None":
        while True:
            await asyncio.sleep(self._poll_interval)

            try:
                current = snapshot_directory(self._path)
            except OSError as e:
                # the directory went away, report it once and release
                logger.info("watched_dir_gone", path=str(self._path), error=str(e))
                self._on_change(self._path)
                return

            if current != self._entries:
                self._entries = current
                self._on_change(self._path)


class MultiDirectoryWatcher:
    """
    MultiDirectoryWatcher keeps one DirectoryWatch per directory and
    debounces their raw change signals: every raw change resets a
    single pending timer and on_change is called once the timer
    fires, so a burst of writes produces one signal.
    """

    def __init__(
        self,
        on_change: "Callable[[], None]",
        debounce_seconds: "float" = _DEFAULT_DEBOUNCE_SECONDS,
        poll_interval: "float" = _DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> "None":
        self._on_change = on_change
        self._debounce = debounce_seconds
        self._poll_interval = poll_interval
        self._watches: "dict[Path, DirectoryWatch]" = {}
        self._pending: "asyncio.TimerHandle | None" = None

    @property
    def watched(self) -> "list[Path]":
        return sorted(p for p, w in self._watches.items() if w.is_watching)

    def watch(self, directories: "Iterable[Path]") -> "None":
        """
        replaces the watched set with directories.
        """
        self.stop_all()
        self.sync(directories)

    def sync(self, directories: "Iterable[Path]") -> "None":
        """
        starts watches for new directories and releases the watches of
        directories no longer listed. A directory that cannot be
        watched is logged and skipped.
        """
        wanted = {Path(d) for d in directories}

        for path in list(self._watches):
            watch = self._watches[path]
            if path not in wanted or not watch.is_watching:
                watch.stop()
                del self._watches[path]

        for path in sorted(wanted - self._watches.keys()):
            watch = DirectoryWatch(path, self._handle_change, self._poll_interval)
            try:
                watch.start()
            except OSError as e:
                logger.warning("watch_failed", path=str(path), error=str(e))
                continue
            self._watches[path] = watch

    def stop_all(self) -> "None":
        for watch in self._watches.values():
            watch.stop()
        self._watches.clear()

        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _handle_change(self, path: "Path") -> "None":
        logger.debug("raw_change", path=str(path))
        if self._pending is not None:
            self._pending.cancel()

        loop = asyncio.get_running_loop()
        self._pending = loop.call_later(self._debounce, self._fire)

    def _fire(self) -> "None":
        self._pending = None
        logger.info("file_change_detected")
        self._on_change()
