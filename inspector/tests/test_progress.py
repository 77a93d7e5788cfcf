import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from inspector.models import ProgressEntry
from inspector.progress import (
    ProgressStore,
    is_legacy_key,
    mark_read,
    migrate_legacy_keys,
    parse_progress_payload,
    progress_to_payload,
    recompute_from_count,
    recompute_from_messages,
    set_custom_label,
    sync_counts,
)

IDS = ["m1", "m2", "m3", "m4", "m5"]
NOW = "2026-02-16T10:00:00.000Z"


class MarkReadTests(unittest.TestCase):
    def test_mark_middle_message(self) -> None:
        progress = mark_read({}, "sess-1", "m3", IDS, now=NOW)
        entry = progress["sess-1"]
        self.assertEqual(entry.lastReadId, "m3")
        self.assertEqual(entry.lastReadAt, NOW)
        self.assertEqual(entry.totalMsgs, 5)
        self.assertEqual(entry.unreadCount, 2)
        self.assertFalse(entry.readAll)

    def test_mark_last_message(self) -> None:
        entry = mark_read({}, "sess-1", "m5", IDS, now=NOW)["sess-1"]
        self.assertEqual(entry.unreadCount, 0)
        self.assertTrue(entry.readAll)

    def test_unknown_message_id_counts_everything_unread(self) -> None:
        entry = mark_read({}, "sess-1", "gone", IDS, now=NOW)["sess-1"]
        self.assertEqual(entry.lastReadId, "gone")
        self.assertEqual(entry.unreadCount, 5)
        self.assertFalse(entry.readAll)

    def test_input_map_is_not_mutated(self) -> None:
        original = {"sess-1": ProgressEntry(lastReadId="m1", totalMsgs=5, unreadCount=4, customLabel="keep")}
        updated = mark_read(original, "sess-1", "m2", IDS, now=NOW)
        self.assertEqual(original["sess-1"].lastReadId, "m1")
        self.assertEqual(updated["sess-1"].lastReadId, "m2")
        self.assertEqual(updated["sess-1"].customLabel, "keep")


class RecomputeTests(unittest.TestCase):
    def test_growth_after_read_all_clears_read_all(self) -> None:
        progress = mark_read({}, "sess-1", "m5", IDS, now=NOW)
        entry = recompute_from_count(progress, "sess-1", 8)["sess-1"]
        self.assertEqual(entry.totalMsgs, 8)
        self.assertEqual(entry.unreadCount, 3)
        self.assertFalse(entry.readAll)
        self.assertEqual(entry.lastReadId, "m5")

    def test_growth_after_partial_read_adds_new_messages(self) -> None:
        progress = mark_read({}, "sess-1", "m3", IDS, now=NOW)
        entry = recompute_from_count(progress, "sess-1", 7)["sess-1"]
        self.assertEqual(entry.unreadCount, 4)

    def test_count_without_last_read(self) -> None:
        entry = recompute_from_count({}, "sess-1", 6)["sess-1"]
        self.assertEqual(entry.totalMsgs, 6)
        self.assertEqual(entry.unreadCount, 6)
        self.assertIsNone(entry.lastReadId)

    def test_count_without_previous_total(self) -> None:
        progress = {"sess-1": ProgressEntry(lastReadId="m2")}
        entry = recompute_from_count(progress, "sess-1", 4)["sess-1"]
        self.assertEqual(entry.unreadCount, 4)

    def test_unchanged_count_returns_same_map(self) -> None:
        progress = mark_read({}, "sess-1", "m3", IDS, now=NOW)
        self.assertIs(recompute_from_count(progress, "sess-1", 5), progress)
        self.assertIs(recompute_from_messages(progress, "sess-1", IDS), progress)

    def test_recompute_from_messages_uses_position(self) -> None:
        progress = mark_read({}, "sess-1", "m5", IDS, now=NOW)
        grown = IDS + ["m6", "m7"]
        entry = recompute_from_messages(progress, "sess-1", grown)["sess-1"]
        self.assertEqual(entry.totalMsgs, 7)
        self.assertEqual(entry.unreadCount, 2)
        self.assertFalse(entry.readAll)

    def test_sync_counts_updates_each_key(self) -> None:
        progress = mark_read({}, "a", "m5", IDS, now=NOW)
        updated = sync_counts(progress, {"a": 6, "b": 2})
        self.assertEqual(updated["a"].unreadCount, 1)
        self.assertEqual(updated["b"].unreadCount, 2)


class MigrationTests(unittest.TestCase):
    def test_legacy_key_detection(self) -> None:
        self.assertTrue(is_legacy_key("abc.jsonl"))
        self.assertTrue(is_legacy_key("abc.jsonl.deleted.1700000000"))
        self.assertFalse(is_legacy_key("abc-def"))

    def test_legacy_record_moves_to_session_id(self) -> None:
        legacy = ProgressEntry(lastReadId="m2", totalMsgs=5, unreadCount=3)
        migrated = migrate_legacy_keys({"abc.jsonl": legacy}, {"abc.jsonl": "sess-abc"})
        self.assertEqual(dict(migrated), {"sess-abc": legacy})

    def test_existing_session_record_wins(self) -> None:
        legacy = ProgressEntry(lastReadId="old")
        current = ProgressEntry(lastReadId="new")
        migrated = migrate_legacy_keys(
            {"abc.jsonl": legacy, "sess-abc": current},
            {"abc.jsonl": "sess-abc"},
        )
        self.assertEqual(dict(migrated), {"sess-abc": current})

    def test_unknown_legacy_keys_are_left_alone_and_migration_is_idempotent(self) -> None:
        progress = {
            "abc.jsonl": ProgressEntry(lastReadId="m1"),
            "xyz.jsonl.deleted.1700000000": ProgressEntry(lastReadId="m9"),
        }
        mapping = {"abc.jsonl": "sess-abc"}
        once = migrate_legacy_keys(progress, mapping)
        twice = migrate_legacy_keys(once, mapping)

        self.assertEqual(set(once), {"sess-abc", "xyz.jsonl.deleted.1700000000"})
        self.assertIs(twice, once)
        self.assertIn("abc.jsonl", progress)

    def test_no_legacy_keys_returns_same_map(self) -> None:
        progress = {"sess-abc": ProgressEntry()}
        self.assertIs(migrate_legacy_keys(progress, {"abc.jsonl": "sess-abc"}), progress)


class PayloadTests(unittest.TestCase):
    def test_custom_label_set_and_cleared(self) -> None:
        progress = set_custom_label({}, "sess-1", "  Triage  ")
        self.assertEqual(progress["sess-1"].customLabel, "Triage")
        cleared = set_custom_label(progress, "sess-1", "")
        self.assertIsNone(cleared["sess-1"].customLabel)

    def test_payload_round_trip_omits_empty_fields(self) -> None:
        progress = mark_read({}, "sess-1", "m3", IDS, now=NOW)
        payload = progress_to_payload(progress)
        self.assertNotIn("customLabel", payload["sess-1"])
        self.assertEqual(parse_progress_payload(payload), dict(progress))

    def test_invalid_payloads_raise_value_error(self) -> None:
        for raw in ([], "text", {"k": 5}, {"k": {"totalMsgs": "many"}}):
            with self.assertRaises(ValueError):
                parse_progress_payload(raw)


class ProgressStoreTests(unittest.TestCase):
    def test_apply_without_loop_writes_immediately(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "progress.json"
            store = ProgressStore(path)
            before = store.snapshot()
            store.apply(mark_read, "sess-1", "m3", IDS, now=NOW)

            self.assertEqual(dict(before), {})
            self.assertEqual(store.get("sess-1").unreadCount, 2)
            self.assertFalse(store.save_pending)
            self.assertIsNotNone(store.last_saved_at)
            saved = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(saved["sess-1"]["lastReadId"], "m3")

            reloaded = ProgressStore(path)
            reloaded.load()
            self.assertEqual(reloaded.get("sess-1"), store.get("sess-1"))

    def test_write_failure_keeps_memory_and_reports(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            blocker = Path(tmpdir) / "blocker"
            blocker.write_text("not a directory", encoding="utf-8")
            store = ProgressStore(blocker / "progress.json")

            with self.assertLogs("inspector.progress", level="WARNING"):
                store.apply(mark_read, "sess-1", "m5", IDS, now=NOW)

            self.assertTrue(store.get("sess-1").readAll)
            self.assertTrue(store.save_pending)
            self.assertIsNotNone(store.last_save_error)

    def test_corrupt_file_loads_as_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "progress.json"
            path.write_text("{oops", encoding="utf-8")
            store = ProgressStore(path)
            with self.assertLogs("inspector.progress", level="ERROR"):
                store.load()
            self.assertEqual(dict(store.snapshot()), {})

    def test_replace_all_validates(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = ProgressStore(Path(tmpdir) / "progress.json")
            with self.assertRaises(ValueError):
                store.replace_all(["not", "a", "map"])
            store.replace_all({"sess-9": {"lastReadId": "m1", "totalMsgs": 3, "unreadCount": 2}})
            self.assertEqual(store.get("sess-9").unreadCount, 2)


class ProgressStoreDebounceTests(unittest.IsolatedAsyncioTestCase):
    async def test_rapid_updates_are_coalesced_into_one_write(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "progress.json"
            store = ProgressStore(path, debounce_seconds=0.05)
            with patch("inspector.progress.record_progress_save") as record:
                for message_id in ("m1", "m2", "m3"):
                    store.apply(mark_read, "sess-1", message_id, IDS, now=NOW)

                self.assertFalse(path.exists())
                self.assertTrue(store.save_pending)
                self.assertEqual(store.get("sess-1").lastReadId, "m3")

                await asyncio.sleep(0.3)
                await store.aclose()

            self.assertEqual(record.call_count, 1)
            record.assert_called_with("ok")
            saved = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(saved["sess-1"]["lastReadId"], "m3")
            self.assertFalse(store.save_pending)

    async def test_updates_from_worker_threads_are_still_debounced(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "progress.json"
            store = ProgressStore(path, debounce_seconds=0.05)
            store.attach_loop(asyncio.get_running_loop())

            def update_from_worker() -> None:
                for message_id in ("m1", "m2", "m3"):
                    store.apply(mark_read, "sess-1", message_id, IDS, now=NOW)
                store.apply(set_custom_label, "sess-1", "Later")

            with patch("inspector.progress.record_progress_save") as record:
                await asyncio.to_thread(update_from_worker)

                self.assertFalse(path.exists())
                self.assertTrue(store.save_pending)

                await asyncio.sleep(0.3)
                self.assertEqual(record.call_count, 1)
                await store.aclose()

            self.assertEqual(record.call_count, 1)
            saved = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(saved["sess-1"]["lastReadId"], "m3")
            self.assertEqual(saved["sess-1"]["customLabel"], "Later")

    async def test_close_flushes_pending_changes(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "progress.json"
            store = ProgressStore(path, debounce_seconds=10)
            store.apply(set_custom_label, "sess-1", "Later")
            self.assertFalse(path.exists())

            await store.aclose()

            saved = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(saved["sess-1"]["customLabel"], "Later")


if __name__ == "__main__":
    unittest.main()
