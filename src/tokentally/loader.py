import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator

import structlog

from tokentally.decoder import decode_line
from tokentally.dedup import DeduplicationStore
from tokentally.models import Session, UsageEvent

logger = structlog.get_logger()

LOG_FILE_SUFFIX = ".jsonl"


def default_projects_dir() -> "Path":
    return Path.home() / ".claude" / "projects"


def _visible_entries(directory: "Path") -> "list[os.DirEntry[str]]":
    with os.scandir(directory) as it:
        return sorted(
            (entry for entry in it if not entry.name.startswith(".")),
            key=lambda e: e.name,
        )


class SessionLoader:
    """
    SessionLoader reads the session logs of every project found under
    the data root, laid out as root/<project>/<session>.jsonl, and
    turns each file into a deduplicated Session.

    Every failure below the root (unreadable directories, files
    removed mid-scan, undecodable content) is logged and skipped so a
    load always returns whatever could be read.
    """

    def __init__(
        self,
        root: "Path | str | None" = None,
        id_factory: "Callable[[], str] | None" = None,
    ) -> "None":
        self._root = Path(root) if root is not None else default_projects_dir()
        self._id_factory = id_factory

    @property
    def root(self) -> "Path":
        return self._root

    def root_exists(self) -> "bool":
        return self._root.is_dir()

    def project_dirs(self) -> "list[Path]":
        """
        lists the immediate, non-hidden subdirectories of the root.
        """
        if not self.root_exists():
            return []

        try:
            entries = _visible_entries(self._root)
        except OSError as e:
            logger.warning("projects_dir_unreadable", path=str(self._root), error=str(e))
            return []

        dirs: "list[Path]" = []
        for entry in entries:
            try:
                if entry.is_dir():
                    dirs.append(Path(entry.path))
            except OSError:
                continue
        return dirs

    def iter_log_files(self) -> "Iterator[tuple[Path, Path]]":
        """
        yields (project_dir, file) for every log file directly inside
        a project directory.
        """
        for project_dir in self.project_dirs():
            try:
                entries = _visible_entries(project_dir)
            except OSError as e:
                logger.warning(
                    "project_dir_unreadable", path=str(project_dir), error=str(e)
                )
                continue

            for entry in entries:
                if not entry.name.endswith(LOG_FILE_SUFFIX):
                    continue
                try:
                    if not entry.is_file():
                        continue
                except OSError:
                    continue
                yield project_dir, Path(entry.path)

    def load_all(self) -> "list[Session]":
        """
        loads every session under the root. A missing root is not an
        error, it yields no sessions.
        """
        if not self.root_exists():
            logger.info("projects_dir_not_found", path=str(self._root))
            return []

        sessions: "list[Session]" = []
        for project_dir, path in self.iter_log_files():
            session = self.load_file(path, project_dir.name)
            if session is not None:
                sessions.append(session)

        logger.debug("sessions_loaded", count=len(sessions), root=str(self._root))
        return sessions

    def load_file(
        self,
        path: "Path | str",
        project_path: "str" = "",
    ) -> "Session | None":
        """
        decodes one log file. Returns None when the file cannot be read
        or no usage event survives decoding and deduplication.
        """
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("session_file_unreadable", path=str(path), error=str(e))
            return None

        # one fallback instant per file keeps undated events together
        now = datetime.now(timezone.utc)
        dedup = DeduplicationStore()
        session_id = path.stem
        events: "list[UsageEvent]" = []
        start_time: "datetime | None" = None
        end_time: "datetime | None" = None

        for line in content.splitlines():
            if not line:
                continue

            decoded = decode_line(
                line,
                now=now,
                id_factory=self._id_factory,
                default_session_id=session_id,
            )
            if decoded is None:
                continue

            if decoded.session_id is not None:
                session_id = decoded.session_id

            event = decoded.event
            if event is None:
                continue

            if not dedup.is_new(event.message_id, event.request_id):
                continue

            if start_time is None or event.timestamp < start_time:
                start_time = event.timestamp
            if end_time is None or event.timestamp > end_time:
                end_time = event.timestamp

            events.append(event)

        if not events:
            return None

        return Session(
            session_id=session_id,
            project_path=project_path,
            events=tuple(events),
            start_time=start_time,
            end_time=end_time,
            source=str(path),
        )

    def modified_since(self, instant: "datetime | None") -> "bool":
        """
        cheap staleness probe: True when any log file was modified after
        instant (or no instant is known yet). Only stats files.
        """
        if instant is None:
            return True
        if not self.root_exists():
            return False

        threshold = instant.timestamp()
        for _, path in self.iter_log_files():
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if mtime > threshold:
                return True
        return False
