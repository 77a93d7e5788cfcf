"""Keeps progress, danger results and subscribers in step with the corpus."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

from inspector.corpus import DangerIndex, SessionCorpus, is_session_filename
from inspector.events import EventBroker
from inspector.models import ParsedSessionResponse, ProgressEntry
from inspector.observability import start_span
from inspector.parsers.sessions import (
    count_messages,
    message_ids,
    parse_session_text,
    read_session_header,
    session_id_from_entries,
)
from inspector.progress import (
    ProgressStore,
    is_legacy_key,
    mark_read,
    migrate_legacy_keys,
    progress_key,
    recompute_from_count,
    recompute_from_messages,
    set_custom_label,
    sync_counts,
)

logger = logging.getLogger("inspector.sync")


class SessionNotFoundError(LookupError):
    """The requested session file does not exist or cannot be read."""


def _legacy_key_count(progress) -> int:
    return sum(1 for key in progress if is_legacy_key(key))


class SessionSync:
    """Applies corpus changes to the progress store and danger cache."""

    def __init__(
        self,
        corpus: SessionCorpus,
        danger_index: DangerIndex,
        progress_store: ProgressStore,
        broker: Optional[EventBroker] = None,
    ):
        self.corpus = corpus
        self.danger_index = danger_index
        self.progress_store = progress_store
        self.broker = broker

    def session_key(self, filename: str) -> str:
        text = self.corpus.read_text(filename)
        session_id = read_session_header(text)["sessionId"] if text is not None else None
        return progress_key(session_id, filename)

    def reconcile_all(self) -> dict[str, int]:
        """Startup pass: migrate legacy keys, then refresh every session's counters."""
        with start_span("inspector.reconcile_all"):
            ids_by_filename = self.corpus.session_ids_by_filename()
            before = _legacy_key_count(self.progress_store.snapshot())
            self.progress_store.apply(migrate_legacy_keys, ids_by_filename)
            migrated = before - _legacy_key_count(self.progress_store.snapshot())

            counts = self.corpus.message_counts()
            keyed_counts = {
                progress_key(ids_by_filename.get(filename), filename): total
                for filename, total in counts.items()
            }
            self.progress_store.apply(sync_counts, keyed_counts)
        logger.info(f"Reconciled progress for {len(keyed_counts)} sessions ({migrated} legacy keys folded)")
        return {"sessions": len(keyed_counts), "legacyKeysRemoved": migrated}

    def load_session(self, filename: str) -> ParsedSessionResponse:
        """Parse a session, refresh its progress counters and attach its danger hits."""
        signature = self.corpus.signature(filename)
        parsed = self.corpus.load(filename)
        if parsed is None:
            raise SessionNotFoundError(filename)
        session_id = session_id_from_entries(parsed.entries)
        if session_id:
            self.progress_store.apply(migrate_legacy_keys, {filename: session_id})
        key = progress_key(session_id, filename)
        self.progress_store.apply(recompute_from_messages, key, message_ids(parsed.entries))
        hits = self.danger_index.hits_for(filename, parsed, signature)
        return ParsedSessionResponse(
            filename=filename,
            sessionId=session_id,
            entries=parsed.entries,
            parseErrors=parsed.parseErrors,
            totalLines=parsed.totalLines,
            dangerHits=hits,
        )

    def mark_read(self, filename: str, message_id: str) -> tuple[str, ProgressEntry]:
        parsed = self.corpus.load(filename)
        if parsed is None:
            raise SessionNotFoundError(filename)
        key = progress_key(session_id_from_entries(parsed.entries), filename)
        self.progress_store.apply(mark_read, key, message_id, message_ids(parsed.entries))
        return key, self.progress_store.get(key) or ProgressEntry()

    def set_label(self, filename: str, label: str | None) -> tuple[str, ProgressEntry]:
        if self.corpus.resolve_path(filename) is None:
            raise SessionNotFoundError(filename)
        key = self.session_key(filename)
        self.progress_store.apply(set_custom_label, key, label)
        entry = self.progress_store.get(key) or ProgressEntry()
        return key, entry

    def sync_changed_file(self, change_type: str, path: Path) -> dict[str, Any]:
        """Re-parse, re-scan and recompute progress for one changed session file."""
        filename = path.name
        self.danger_index.invalidate(filename)
        event: dict[str, Any] = {"eventType": change_type, "filename": filename}
        if change_type == "deleted":
            return event

        signature = self.corpus.signature(filename)
        text = self.corpus.read_text(filename)
        if text is None:
            event["eventType"] = "deleted"
            return event

        session_id = read_session_header(text)["sessionId"]
        if session_id:
            self.progress_store.apply(migrate_legacy_keys, {filename: session_id})
        key = progress_key(session_id, filename)
        total = count_messages(text)
        self.progress_store.apply(recompute_from_count, key, total)

        hits = self.danger_index.hits_for(filename, parse_session_text(text), signature)
        entry = self.progress_store.get(key)
        event.update(
            {
                "progressKey": key,
                "totalMsgs": total,
                "unreadCount": entry.unreadCount if entry else total,
                "dangerCount": len(hits),
            }
        )
        return event

    async def sync_changed_files(self, changed_files: list[tuple[str, Path]]) -> dict[str, int]:
        """Used by the file watcher. ``changed_files`` holds (change_type, path) pairs."""
        stats = {"sessions": 0, "events": 0}
        for change_type, path in changed_files:
            if not is_session_filename(path.name):
                continue
            try:
                event = await asyncio.to_thread(self.sync_changed_file, change_type, path)
            except Exception as e:
                logger.error(f"Error syncing changed session {path.name}: {e}")
                continue
            stats["sessions"] += 1
            if self.broker is not None:
                self.broker.publish("file-change", event)
                stats["events"] += 1
        return stats
