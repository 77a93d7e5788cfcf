import unittest
from pathlib import Path

from watchfiles import Change

from inspector.file_watcher import FileWatcher, classify_changes


class _RecordingSync:
    def __init__(self) -> None:
        self.batches: list[list[tuple[str, Path]]] = []

    async def sync_changed_files(self, changed_files):
        self.batches.append(changed_files)
        return {"sessions": len(changed_files), "events": 0}


class FileWatcherTests(unittest.IsolatedAsyncioTestCase):
    def test_classify_keeps_session_files_only(self) -> None:
        changes = {
            (Change.modified, "/sessions/b.jsonl"),
            (Change.added, "/sessions/a.jsonl"),
            (Change.deleted, "/sessions/c.jsonl.deleted.1700000000"),
            (Change.modified, "/sessions/sessions.json"),
            (Change.added, "/sessions/notes.txt"),
        }
        self.assertEqual(
            classify_changes(changes),
            [
                ("added", Path("/sessions/a.jsonl")),
                ("modified", Path("/sessions/b.jsonl")),
                ("deleted", Path("/sessions/c.jsonl.deleted.1700000000")),
            ],
        )

    async def test_missing_directory_is_not_watched(self) -> None:
        watcher = FileWatcher(_RecordingSync(), Path("/nonexistent/inspector/sessions"))
        with self.assertLogs("inspector.watcher", level="WARNING"):
            started = await watcher.start()
        self.assertFalse(started)
        self.assertFalse(watcher.is_running)
        await watcher.stop()

    async def test_stop_is_idempotent(self) -> None:
        watcher = FileWatcher(_RecordingSync(), Path("/nonexistent"))
        await watcher.stop()
        await watcher.stop()
        self.assertFalse(watcher.is_running)


if __name__ == "__main__":
    unittest.main()
