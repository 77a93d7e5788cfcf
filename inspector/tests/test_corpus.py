import json
import tempfile
import unittest
from pathlib import Path

from inspector.corpus import DangerIndex, SessionCorpus, is_session_filename, resolve_status
from inspector.danger_rules import compile_rules
from inspector.models import RuleDefinition


def _session_line(session_id: str) -> str:
    return json.dumps({"type": "session", "id": session_id, "timestamp": "2026-02-01T00:00:00Z"})


def _message_line(msg_id: str, command: str | None = None) -> str:
    if command is None:
        content = [{"type": "text", "text": f"message {msg_id}"}]
    else:
        content = [{"type": "toolCall", "name": "exec", "arguments": {"command": command}}]
    return json.dumps({"type": "message", "id": msg_id, "message": {"role": "assistant", "content": content}})


def _write_corpus(root: Path) -> None:
    (root / "abc-def.jsonl").write_text(
        "\n".join([_session_line("abc-def"), _message_line("m1"), _message_line("m2", "rm -rf build")]) + "\n",
        encoding="utf-8",
    )
    (root / "abc-def-topic-1.jsonl").write_text(
        "\n".join([_session_line("topic-1"), _message_line("t1")]) + "\n",
        encoding="utf-8",
    )
    (root / "xyz.jsonl.deleted.1700000000").write_text(
        "\n".join([_session_line("xyz"), _message_line("x1"), "{broken"]) + "\n",
        encoding="utf-8",
    )
    (root / "orphan.jsonl").write_text(_message_line("o1") + "\n", encoding="utf-8")
    (root / "sessions.json").write_text(
        json.dumps({"agent:main:main": {"sessionId": "abc-def", "label": "Main chat"}}),
        encoding="utf-8",
    )
    (root / "notes.txt").write_text("not a session", encoding="utf-8")


def _rule_set():
    return compile_rules([
        RuleDefinition(category="destructive-fs", severity="critical", patterns=[r"\brm\s+-[a-z]*r"]),
    ])


class StatusTests(unittest.TestCase):
    def test_session_filename_filter(self) -> None:
        self.assertTrue(is_session_filename("abc.jsonl"))
        self.assertTrue(is_session_filename("abc.jsonl.deleted.1700000000"))
        self.assertFalse(is_session_filename("sessions.json"))
        self.assertFalse(is_session_filename("notes.txt"))

    def test_resolve_status(self) -> None:
        meta = {"abc-def": {"label": "Main chat"}}
        self.assertEqual(resolve_status("abc-def.jsonl", meta).status, "active")
        self.assertEqual(resolve_status("abc-def.jsonl", meta).label, "Main chat")
        self.assertEqual(resolve_status("abc-def-topic-1.jsonl", meta).status, "active")
        self.assertEqual(resolve_status("abc-def.jsonl.deleted.1700000000", meta).status, "deleted")
        self.assertEqual(resolve_status("other.jsonl", meta).status, "orphan")
        self.assertEqual(resolve_status("other.jsonl", {}).label, "")


class SessionCorpusTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self._tmpdir.name)
        _write_corpus(self.root)
        self.corpus = SessionCorpus(self.root)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_filenames_are_sorted_session_files(self) -> None:
        self.assertEqual(
            self.corpus.filenames(),
            ["abc-def-topic-1.jsonl", "abc-def.jsonl", "orphan.jsonl", "xyz.jsonl.deleted.1700000000"],
        )

    def test_list_sessions_describes_each_file(self) -> None:
        sessions = {info.filename: info for info in self.corpus.list_sessions()}

        main = sessions["abc-def.jsonl"]
        self.assertEqual(main.sessionId, "abc-def")
        self.assertEqual(main.createdAt, "2026-02-01T00:00:00Z")
        self.assertEqual(main.status, "active")
        self.assertEqual(main.label, "Main chat")
        self.assertGreater(main.size, 0)
        self.assertGreater(main.mtime, 0)

        deleted = sessions["xyz.jsonl.deleted.1700000000"]
        self.assertTrue(deleted.deleted)
        self.assertEqual(deleted.status, "deleted")

        orphan = sessions["orphan.jsonl"]
        self.assertIsNone(orphan.sessionId)
        self.assertEqual(orphan.status, "orphan")

    def test_missing_directory_lists_nothing(self) -> None:
        corpus = SessionCorpus(self.root / "missing")
        self.assertEqual(corpus.filenames(), [])
        self.assertEqual(corpus.list_sessions(), [])

    def test_path_traversal_is_rejected(self) -> None:
        self.assertIsNone(self.corpus.read_text("../outside.jsonl"))
        self.assertIsNone(self.corpus.resolve_path("../../etc/passwd"))
        self.assertIsNone(self.corpus.resolve_path(""))
        self.assertIsNone(self.corpus.read_text("missing.jsonl"))
        self.assertIsNotNone(self.corpus.read_text("abc-def.jsonl"))

    def test_registry_and_id_mapping(self) -> None:
        registry = self.corpus.load_registry()
        self.assertEqual(registry["abc-def"]["label"], "Main chat")
        self.assertEqual(
            self.corpus.session_ids_by_filename(),
            {
                "abc-def-topic-1.jsonl": "topic-1",
                "abc-def.jsonl": "abc-def",
                "xyz.jsonl.deleted.1700000000": "xyz",
            },
        )

    def test_message_counts_and_parse_errors(self) -> None:
        self.assertEqual(
            self.corpus.message_counts(),
            {
                "abc-def-topic-1.jsonl": 1,
                "abc-def.jsonl": 2,
                "orphan.jsonl": 1,
                "xyz.jsonl.deleted.1700000000": 1,
            },
        )
        parsed = self.corpus.load("xyz.jsonl.deleted.1700000000")
        self.assertEqual(len(parsed.parseErrors), 1)
        self.assertEqual(parsed.totalLines, 3)

    def test_search_is_case_insensitive_and_needs_two_characters(self) -> None:
        self.assertEqual(self.corpus.search("RM -RF"), ["abc-def.jsonl"])
        self.assertEqual(self.corpus.search("x"), [])
        self.assertEqual(self.corpus.search("nothing-matches-this"), [])


class DangerIndexTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self._tmpdir.name)
        _write_corpus(self.root)
        self.index = DangerIndex(SessionCorpus(self.root), _rule_set())

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_all_hits_is_sparse(self) -> None:
        results = self.index.all_hits()
        self.assertEqual(list(results), ["abc-def.jsonl"])
        self.assertEqual(results["abc-def.jsonl"][0].msgId, "m2")
        self.assertEqual(results["abc-def.jsonl"][0].command, "exec: rm -rf build")

    def test_hits_are_cached_until_the_file_changes(self) -> None:
        first = self.index.hits_for("abc-def.jsonl")
        self.assertIs(self.index.hits_for("abc-def.jsonl"), first)

        self.assertEqual(self.index.hits_for("orphan.jsonl"), [])
        with (self.root / "orphan.jsonl").open("a", encoding="utf-8") as handle:
            handle.write(_message_line("o2", "rm -r old-logs") + "\n")
        self.assertEqual(len(self.index.hits_for("orphan.jsonl")), 1)

        self.index.invalidate("abc-def.jsonl")
        self.assertIsNot(self.index.hits_for("abc-def.jsonl"), first)

    def test_append_after_read_is_rescanned(self) -> None:
        corpus = self.index.corpus
        signature = corpus.signature("orphan.jsonl")
        parsed = corpus.load("orphan.jsonl")
        with (self.root / "orphan.jsonl").open("a", encoding="utf-8") as handle:
            handle.write(_message_line("o2", "rm -r old-logs") + "\n")

        self.assertEqual(self.index.hits_for("orphan.jsonl", parsed, signature), [])
        self.assertEqual([hit.msgId for hit in self.index.hits_for("orphan.jsonl")], ["o2"])

    def test_parsed_without_signature_is_reread(self) -> None:
        parsed = self.index.corpus.load("orphan.jsonl")
        with (self.root / "orphan.jsonl").open("a", encoding="utf-8") as handle:
            handle.write(_message_line("o2", "rm -r old-logs") + "\n")
        self.assertEqual(len(self.index.hits_for("orphan.jsonl", parsed)), 1)

    def test_removed_files_drop_out(self) -> None:
        self.index.all_hits()
        (self.root / "abc-def.jsonl").unlink()
        self.assertEqual(self.index.hits_for("abc-def.jsonl"), [])
        self.assertEqual(self.index.all_hits(), {})


if __name__ == "__main__":
    unittest.main()
