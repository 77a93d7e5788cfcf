"""Read-progress reconciliation and the persisted progress store.

Progress maps are treated as immutable: every reconciliation function takes
the current ``{session key: ProgressEntry}`` map and returns a new one (or the
same object when nothing changed). ``ProgressStore`` owns the live map and
swaps it wholesale, so a reader holding a snapshot never sees a half-applied
update.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Sequence

from pydantic import ValidationError

from inspector.models import ProgressEntry
from inspector.observability import record_progress_save

logger = logging.getLogger("inspector.progress")

ProgressMap = Mapping[str, ProgressEntry]

_LEGACY_SUFFIX = ".jsonl"
_DELETED_MARKER = ".deleted."


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def progress_key(session_id: str | None, filename: str) -> str:
    """Stable session id when known, otherwise the filename."""
    return session_id or filename


def is_legacy_key(key: str) -> bool:
    return key.endswith(_LEGACY_SUFFIX) or _DELETED_MARKER in key


def _position_of(message_ids: Sequence[str | None], message_id: str) -> tuple[int, bool]:
    """Return (unread count after ``message_id``, whether it is the last message).

    An id that is not in the list counts every message as unread.
    """
    total = len(message_ids)
    is_last = bool(message_ids) and message_ids[-1] == message_id
    try:
        idx = list(message_ids).index(message_id)
    except ValueError:
        return total, is_last
    return total - idx - 1, is_last


def _replace(progress: ProgressMap, key: str, updated: ProgressEntry) -> ProgressMap:
    if progress.get(key) == updated:
        return progress
    result = dict(progress)
    result[key] = updated
    return result


def mark_read(
    progress: ProgressMap,
    key: str,
    message_id: str,
    message_ids: Sequence[str | None],
    now: str | None = None,
) -> ProgressMap:
    """Mark ``message_id`` as the last reviewed message of session ``key``."""
    entry = progress.get(key) or ProgressEntry()
    unread, is_last = _position_of(message_ids, message_id)
    updated = entry.model_copy(
        update={
            "lastReadId": message_id,
            "lastReadAt": now or utc_now_iso(),
            "totalMsgs": len(message_ids),
            "unreadCount": unread,
            "readAll": is_last,
        }
    )
    result = dict(progress)
    result[key] = updated
    return result


def recompute_from_messages(
    progress: ProgressMap,
    key: str,
    message_ids: Sequence[str | None],
) -> ProgressMap:
    """Recompute counters against the session's full message list."""
    entry = progress.get(key) or ProgressEntry()
    total = len(message_ids)
    if not entry.lastReadId:
        updated = entry.model_copy(update={"totalMsgs": total, "unreadCount": total})
    else:
        unread, is_last = _position_of(message_ids, entry.lastReadId)
        updated = entry.model_copy(
            update={"totalMsgs": total, "unreadCount": unread, "readAll": is_last}
        )
    return _replace(progress, key, updated)


def recompute_from_count(progress: ProgressMap, key: str, total: int) -> ProgressMap:
    """Recompute counters when only the new message total is known.

    Messages are append-only, so the number already read is
    ``oldTotal - oldUnread`` and everything beyond it is unread.
    """
    entry = progress.get(key) or ProgressEntry()
    total = max(0, int(total))
    if not entry.lastReadId:
        updated = entry.model_copy(update={"totalMsgs": total, "unreadCount": total})
        return _replace(progress, key, updated)

    if entry.totalMsgs is None:
        unread = total
    else:
        already_read = entry.totalMsgs - (entry.unreadCount or 0)
        unread = max(0, total - already_read)
    updated = entry.model_copy(
        update={
            "totalMsgs": total,
            "unreadCount": unread,
            "readAll": bool(entry.readAll) and unread == 0,
        }
    )
    return _replace(progress, key, updated)


def sync_counts(progress: ProgressMap, counts: Mapping[str, int]) -> ProgressMap:
    """Apply ``recompute_from_count`` for every ``{key: total}`` pair."""
    result = progress
    for key, total in counts.items():
        result = recompute_from_count(result, key, total)
    return result


def migrate_legacy_keys(
    progress: ProgressMap,
    session_ids_by_filename: Mapping[str, str],
) -> ProgressMap:
    """Move filename-keyed records to their session id key.

    Existing session-id records are never overwritten. A legacy key is
    removed once its session id is known, whether or not the record moved;
    keys without a known session id are left alone. Safe to run repeatedly.
    """
    result: dict[str, ProgressEntry] | None = None
    for key, entry in progress.items():
        if not is_legacy_key(key):
            continue
        session_id = session_ids_by_filename.get(key)
        if not session_id or session_id == key:
            continue
        if result is None:
            result = dict(progress)
        if session_id not in result:
            result[session_id] = entry
        else:
            logger.info(f"Discarding legacy progress for {key}; {session_id} already tracked")
        del result[key]
    return progress if result is None else result


def set_custom_label(progress: ProgressMap, key: str, label: str | None) -> ProgressMap:
    entry = progress.get(key) or ProgressEntry()
    cleaned = (label or "").strip()
    updated = entry.model_copy(update={"customLabel": cleaned or None})
    return _replace(progress, key, updated)


def parse_progress_payload(raw: Any) -> dict[str, ProgressEntry]:
    """Validate a ``{key: entry}`` document. Raises ValueError."""
    if not isinstance(raw, dict):
        raise ValueError("Progress document must be a JSON object")
    parsed: dict[str, ProgressEntry] = {}
    for key, value in raw.items():
        if not isinstance(value, dict):
            raise ValueError(f"Progress entry for {key!r} must be an object")
        try:
            parsed[str(key)] = ProgressEntry.model_validate(value)
        except ValidationError as exc:
            raise ValueError(f"Invalid progress entry for {key!r}: {exc}") from exc
    return parsed


def progress_to_payload(progress: ProgressMap) -> dict[str, dict[str, Any]]:
    return {key: entry.model_dump(exclude_none=True) for key, entry in progress.items()}


class ProgressStore:
    """Owns the live progress map and its debounced JSON persistence."""

    def __init__(self, path: Path, debounce_seconds: float = 0.3):
        self.path = path
        self.debounce_seconds = max(0.0, debounce_seconds)
        self._progress: dict[str, ProgressEntry] = {}
        self._write_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._dirty = False
        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._save_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[threading.Thread] = None
        self.last_save_error: Optional[str] = None
        self.last_saved_at: Optional[str] = None

    # ── reads ──

    def snapshot(self) -> Mapping[str, ProgressEntry]:
        return MappingProxyType(self._progress)

    def get(self, key: str) -> ProgressEntry | None:
        return self._progress.get(key)

    def to_payload(self) -> dict[str, dict[str, Any]]:
        return progress_to_payload(self._progress)

    @property
    def save_pending(self) -> bool:
        return self._dirty

    # ── writes ──

    def apply(self, fn: Callable[..., ProgressMap], *args: Any, **kwargs: Any) -> Mapping[str, ProgressEntry]:
        """Apply a reconciliation function and publish the result as the new map."""
        with self._write_lock:
            current = self._progress
            updated = fn(current, *args, **kwargs)
            if updated is current:
                return self.snapshot()
            self._progress = dict(updated)
        self._schedule_save()
        return self.snapshot()

    def replace_all(self, raw: Any) -> Mapping[str, ProgressEntry]:
        parsed = parse_progress_payload(raw)
        return self.apply(lambda _current: parsed)

    def load(self) -> Mapping[str, ProgressEntry]:
        """Read the persisted map. A missing file is an empty map."""
        if not self.path.exists():
            return self.snapshot()
        try:
            text = self.path.read_text(encoding="utf-8")
            parsed = parse_progress_payload(json.loads(text) if text.strip() else {})
        except (OSError, ValueError) as exc:
            logger.error(f"Failed to load progress file {self.path}: {exc}")
            return self.snapshot()
        with self._write_lock:
            self._progress = parsed
        logger.info(f"Loaded progress for {len(parsed)} sessions from {self.path}")
        return self.snapshot()

    # ── persistence ──

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Debounce saves on ``loop`` even when ``apply`` runs in a worker thread."""
        self._loop = loop
        self._loop_thread = threading.current_thread()

    def _on_loop_thread(self) -> bool:
        return self._loop_thread is threading.current_thread()

    def _schedule_save(self) -> None:
        self._dirty = True
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self.flush()
                return
        elif not self._on_loop_thread():
            try:
                loop.call_soon_threadsafe(self._rearm_save)
            except RuntimeError:
                # loop already closed
                self.flush()
            return
        self._rearm_save(loop)

    def _rearm_save(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        if self._save_handle is not None:
            self._save_handle.cancel()
        self._save_handle = loop.call_later(self.debounce_seconds, self._start_save_task)

    def _start_save_task(self) -> None:
        self._save_handle = None
        self._save_task = asyncio.get_running_loop().create_task(asyncio.to_thread(self.flush))

    def flush(self) -> bool:
        """Write the current map to disk if it has unsaved changes."""
        with self._flush_lock:
            if not self._dirty:
                return True
            self._dirty = False
            payload = self.to_payload()
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
                os.replace(tmp_path, self.path)
            except OSError as exc:
                self._dirty = True
                self.last_save_error = str(exc)
                logger.warning(f"Failed to save progress to {self.path}: {exc}")
                record_progress_save("error")
                return False
            self.last_save_error = None
            self.last_saved_at = utc_now_iso()
            record_progress_save("ok")
            return True

    async def aclose(self) -> None:
        """Cancel the pending debounce and write synchronously."""
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        if self._save_task is not None:
            try:
                await self._save_task
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Background progress save failed: {exc}")
            self._save_task = None
        await asyncio.to_thread(self.flush)
        self._loop = None
        self._loop_thread = None
