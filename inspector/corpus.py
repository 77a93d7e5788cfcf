"""Session corpus: enumerate, read and index session JSONL files on disk."""
from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Optional

from inspector import config
from inspector.danger_rules import RuleSet
from inspector.models import DangerHit, ParsedSession, SessionFileInfo, SessionStatus
from inspector.observability import record_parse_failure, record_scan, start_span
from inspector.parsers.sessions import count_messages, parse_session_text, read_session_header
from inspector.scanner import scan_entries

logger = logging.getLogger("inspector.corpus")

_DELETED_MARKER = ".deleted."
_MIN_SEARCH_LENGTH = 2


def is_session_filename(name: str) -> bool:
    return name.endswith(".jsonl") or _DELETED_MARKER in name


def _base_session_name(filename: str) -> str:
    return filename[: -len(".jsonl")] if filename.endswith(".jsonl") else filename


def resolve_status(filename: str, meta_by_id: dict[str, dict[str, Any]]) -> SessionStatus:
    """Lifecycle of a session file relative to the agent's live registry."""
    if _DELETED_MARKER in filename:
        return SessionStatus(status="deleted", label="")
    base = _base_session_name(filename)
    meta = meta_by_id.get(base)
    if meta:
        return SessionStatus(status="active", label=meta.get("label") or "")
    for session_id, candidate in meta_by_id.items():
        if base.startswith(session_id) or session_id.startswith(base):
            return SessionStatus(status="active", label=candidate.get("label") or "")
    return SessionStatus(status="orphan", label="")


class SessionCorpus:
    """Read-only view over a sessions directory."""

    def __init__(self, sessions_dir: Path, registry_filename: str = config.SESSIONS_REGISTRY_FILENAME):
        self.sessions_dir = sessions_dir
        self.registry_filename = registry_filename

    def _root(self) -> Path:
        return self.sessions_dir.resolve(strict=False)

    def filenames(self) -> list[str]:
        try:
            names = [p.name for p in self.sessions_dir.iterdir() if p.is_file()]
        except OSError as exc:
            logger.warning(f"Cannot list sessions in {self.sessions_dir}: {exc}")
            return []
        return sorted(name for name in names if is_session_filename(name))

    def resolve_path(self, filename: str) -> Optional[Path]:
        """Path for ``filename`` if it stays inside the sessions directory."""
        if not filename:
            return None
        root = self._root()
        candidate = (root / filename).resolve(strict=False)
        try:
            candidate.relative_to(root)
        except ValueError:
            logger.warning(f"Rejected session path outside {root}: {filename}")
            return None
        if candidate == root:
            return None
        return candidate

    def read_text(self, filename: str) -> Optional[str]:
        path = self.resolve_path(filename)
        if path is None or not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning(f"Failed to read session {filename}: {exc}")
            return None

    def signature(self, filename: str) -> Optional[tuple[int, int]]:
        path = self.resolve_path(filename)
        if path is None:
            return None
        try:
            stat = path.stat()
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def load(self, filename: str) -> Optional[ParsedSession]:
        text = self.read_text(filename)
        if text is None:
            return None
        parsed = parse_session_text(text)
        if parsed.parseErrors:
            logger.info(
                f"{filename}: {parsed.totalLines - len(parsed.parseErrors)}/{parsed.totalLines} "
                f"lines parsed, {len(parsed.parseErrors)} errors"
            )
            record_parse_failure(len(parsed.parseErrors))
        return parsed

    def load_registry(self) -> dict[str, dict[str, Any]]:
        """Map session id -> registry metadata from the agent's sessions.json."""
        path = self.sessions_dir / self.registry_filename
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(f"Failed to read session registry {path}: {exc}")
            return {}
        if not isinstance(data, dict):
            return {}

        by_id: dict[str, dict[str, Any]] = {}
        for key, value in data.items():
            if not isinstance(value, dict):
                continue
            session_id = value.get("sessionId")
            if isinstance(session_id, str) and session_id:
                by_id[session_id] = {
                    "status": "active",
                    "label": value.get("label") or "",
                    "key": key,
                    "updatedAt": value.get("updatedAt"),
                }
        return by_id

    def _read_header(self, path: Path) -> dict[str, Optional[str]]:
        try:
            with path.open("r", encoding="utf-8", errors="replace") as handle:
                first_line = handle.readline()
        except OSError:
            return {"sessionId": None, "createdAt": None}
        return read_session_header(first_line)

    def describe(self, filename: str, meta_by_id: dict[str, dict[str, Any]] | None = None) -> Optional[SessionFileInfo]:
        path = self.resolve_path(filename)
        if path is None:
            return None
        try:
            stat = path.stat()
        except OSError:
            return None
        header = self._read_header(path)
        status = resolve_status(filename, meta_by_id if meta_by_id is not None else self.load_registry())
        return SessionFileInfo(
            filename=filename,
            size=stat.st_size,
            mtime=stat.st_mtime * 1000,
            createdAt=header["createdAt"],
            sessionId=header["sessionId"],
            deleted=_DELETED_MARKER in filename,
            status=status.status,
            label=status.label,
        )

    def list_sessions(self) -> list[SessionFileInfo]:
        meta_by_id = self.load_registry()
        sessions: list[SessionFileInfo] = []
        for filename in self.filenames():
            info = self.describe(filename, meta_by_id)
            if info is not None:
                sessions.append(info)
        return sessions

    def statuses(self) -> dict[str, SessionStatus]:
        meta_by_id = self.load_registry()
        return {filename: resolve_status(filename, meta_by_id) for filename in self.filenames()}

    def session_ids_by_filename(self) -> dict[str, str]:
        mapping: dict[str, str] = {}
        for filename in self.filenames():
            path = self.resolve_path(filename)
            if path is None:
                continue
            session_id = self._read_header(path)["sessionId"]
            if session_id:
                mapping[filename] = session_id
        return mapping

    def message_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for filename in self.filenames():
            text = self.read_text(filename)
            if text is None:
                continue
            counts[filename] = count_messages(text)
        return counts

    def search(self, query: str) -> list[str]:
        """Filenames whose contents contain ``query`` (case-insensitive)."""
        needle = (query or "").strip().lower()
        if len(needle) < _MIN_SEARCH_LENGTH:
            return []
        matches: list[str] = []
        for filename in self.filenames():
            text = self.read_text(filename)
            if text is not None and needle in text.lower():
                matches.append(filename)
        return matches


class DangerIndex:
    """Per-file danger hits, cached by file signature."""

    def __init__(self, corpus: SessionCorpus, rule_set: RuleSet):
        self.corpus = corpus
        self.rule_set = rule_set
        self._cache: dict[str, tuple[tuple[int, int], list[DangerHit]]] = {}
        self._lock = threading.Lock()

    def invalidate(self, filename: str | None = None) -> None:
        with self._lock:
            if filename is None:
                self._cache.clear()
            else:
                self._cache.pop(filename, None)

    def hits_for(
        self,
        filename: str,
        parsed: ParsedSession | None = None,
        signature: tuple[int, int] | None = None,
    ) -> list[DangerHit]:
        """Hits for one file, scanning ``parsed`` when it is supplied.

        ``signature`` must have been taken before ``parsed`` was read, so a
        file appended in between is cached under its older signature and
        re-scanned on the next call. ``parsed`` without a signature is ignored.
        """
        if parsed is None or signature is None:
            parsed = None
            signature = self.corpus.signature(filename)
        if signature is None:
            self.invalidate(filename)
            return []
        with self._lock:
            cached = self._cache.get(filename)
        if cached is not None and cached[0] == signature:
            return cached[1]

        if parsed is None:
            parsed = self.corpus.load(filename)
        hits = scan_entries(parsed.entries, self.rule_set) if parsed is not None else []
        with self._lock:
            self._cache[filename] = (signature, hits)
        return hits

    def all_hits(self) -> dict[str, list[DangerHit]]:
        """Sparse map of filename -> hits; sessions without hits are omitted."""
        started = time.monotonic()
        filenames = self.corpus.filenames()
        results: dict[str, list[DangerHit]] = {}
        with start_span("inspector.danger_index", {"sessions": len(filenames)}):
            for filename in filenames:
                hits = self.hits_for(filename)
                if hits:
                    results[filename] = hits
        with self._lock:
            for stale in set(self._cache) - set(filenames):
                del self._cache[stale]
        record_scan(
            sum(len(hits) for hits in results.values()),
            (time.monotonic() - started) * 1000,
            sessions=len(filenames),
        )
        return results
