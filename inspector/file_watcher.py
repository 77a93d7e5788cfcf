"""Session directory watcher built on watchfiles.

Batches of filesystem events are reduced to session-file changes and handed
to ``SessionSync.sync_changed_files``, which re-scans the affected sessions
and notifies SSE subscribers.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from pathlib import Path
from typing import Iterable, Optional

from watchfiles import Change, awatch

from inspector.corpus import is_session_filename

logger = logging.getLogger("inspector.watcher")

_CHANGE_NAMES = {
    Change.added: "added",
    Change.modified: "modified",
    Change.deleted: "deleted",
}


def classify_changes(changes: Iterable[tuple[Change, str]]) -> list[tuple[str, Path]]:
    """Session-file changes as ``(change_type, path)`` pairs, ordered by path."""
    classified: list[tuple[str, Path]] = []
    for change, raw_path in sorted(changes, key=lambda item: item[1]):
        path = Path(raw_path)
        if is_session_filename(path.name):
            classified.append((_CHANGE_NAMES[change], path))
    return classified


class FileWatcher:
    def __init__(self, session_sync, sessions_dir: Path, debounce_ms: int = 400):
        self.session_sync = session_sync
        self.sessions_dir = sessions_dir
        self.debounce_ms = max(1, debounce_ms)
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> bool:
        """Begin watching in a background task. Returns False if nothing to watch."""
        if self.is_running:
            logger.warning("Session watcher already started")
            return True
        if not self.sessions_dir.is_dir():
            logger.warning("Sessions directory %s is missing; changes will not be watched", self.sessions_dir)
            return False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="inspector-file-watcher")
        logger.info("Watching %s for session changes", self.sessions_dir)
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.info("Session watcher stopped")

    async def _run(self) -> None:
        try:
            async for changes in awatch(
                self.sessions_dir,
                stop_event=self._stop_event,
                debounce=self.debounce_ms,
            ):
                batch = classify_changes(changes)
                if not batch:
                    continue
                logger.info("Syncing %d changed session files", len(batch))
                try:
                    await self.session_sync.sync_changed_files(batch)
                except Exception:
                    logger.exception("Failed to sync %d changed session files", len(batch))
        except Exception:
            logger.exception("Session watcher stopped unexpectedly")
