"""Parse JSONL session transcripts into SessionEntry models."""
from __future__ import annotations

import json
import logging
from typing import Any, Iterable

from pydantic import ValidationError

from inspector.models import (
    PARSE_ERROR_TYPE,
    ParsedSession,
    ParseError,
    SessionEntry,
)

logger = logging.getLogger("inspector.parser")

_RAW_PREVIEW_LIMIT = 200
_ELLIPSIS = "…"

# Optional message fields and the type each must have to be kept.
_MESSAGE_FIELD_TYPES = {
    "isError": bool,
    "toolName": str,
    "toolCallId": str,
    "usage": dict,
}


def _preview(line: str) -> str:
    if len(line) > _RAW_PREVIEW_LIMIT:
        return line[:_RAW_PREVIEW_LIMIT] + _ELLIPSIS
    return line


def normalize_session_id(value: Any) -> str | None:
    """Session id as a non-empty string; integer ids are stringified."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value:
        return value
    return None


def _recover_message(message: Any) -> dict[str, Any] | None:
    """Drop only the mistyped fields of a message so its content blocks survive."""
    if not isinstance(message, dict):
        return None
    cleaned = dict(message)
    if not isinstance(cleaned.get("content"), list):
        cleaned.pop("content", None)
    if not isinstance(cleaned.get("role"), str):
        cleaned.pop("role", None)
    for key, expected in _MESSAGE_FIELD_TYPES.items():
        if key in cleaned and cleaned[key] is not None and not isinstance(cleaned[key], expected):
            cleaned.pop(key)
    return cleaned


def _build_entry(payload: dict[str, Any], line_number: int) -> SessionEntry:
    """Validate a decoded line, discarding mistyped fields instead of failing."""
    data = {**payload, "lineNumber": line_number}
    data.pop("parseError", None)
    entry_id = data.get("id")
    if isinstance(entry_id, int) and not isinstance(entry_id, bool):
        data["id"] = str(entry_id)
    try:
        return SessionEntry.model_validate(data)
    except ValidationError as exc:
        logger.debug("Line %s has an unexpected shape: %s", line_number, exc)

    for key, default in (("type", ""), ("id", None), ("timestamp", None)):
        if not isinstance(data.get(key), str):
            data[key] = default
    if "message" in data:
        data["message"] = _recover_message(data["message"])
    try:
        return SessionEntry.model_validate(data)
    except ValidationError as exc:
        logger.warning("Line %s: dropping unreadable message: %s", line_number, exc)
    data.pop("message", None)
    return SessionEntry.model_validate(data)


def parse_session_text(text: str) -> ParsedSession:
    """Parse session file contents line by line.

    Every non-blank line yields exactly one entry: the decoded record, or a
    synthetic ``parse-error`` entry when the line is not a JSON object.
    Blank lines are skipped and not counted. Never raises.
    """
    entries: list[SessionEntry] = []
    parse_errors: list[ParseError] = []
    total_lines = 0

    for idx, raw_line in enumerate((text or "").split("\n")):
        line = raw_line.strip()
        if not line:
            continue
        total_lines += 1
        line_number = idx + 1

        error_message = ""
        try:
            payload = json.loads(line)
        except ValueError as exc:
            error_message = str(exc)
        else:
            if isinstance(payload, dict):
                entries.append(_build_entry(payload, line_number))
                continue
            error_message = f"Expected a JSON object, got {type(payload).__name__}"

        error = ParseError(line=line_number, raw=_preview(line), error=error_message)
        parse_errors.append(error)
        entries.append(
            SessionEntry(type=PARSE_ERROR_TYPE, lineNumber=line_number, parseError=error)
        )

    return ParsedSession(entries=entries, parseErrors=parse_errors, totalLines=total_lines)


def message_entries(entries: Iterable[SessionEntry]) -> list[SessionEntry]:
    return [entry for entry in entries if entry.type == "message"]


def message_ids(entries: Iterable[SessionEntry]) -> list[str | None]:
    """Ids of ``message`` entries in file order."""
    return [entry.id for entry in message_entries(entries)]


def count_messages(text: str) -> int:
    """Count ``message`` records without building full entries."""
    total = 0
    for raw_line in (text or "").split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except ValueError:
            continue
        if isinstance(obj, dict) and obj.get("type") == "message":
            total += 1
    return total


def session_id_from_entries(entries: list[SessionEntry]) -> str | None:
    """Session id carried by a ``session`` record on the first line, if any."""
    if not entries:
        return None
    first = entries[0]
    if first.lineNumber != 1 or first.type != "session":
        return None
    extra = first.model_extra or {}
    return normalize_session_id(extra.get("sessionId")) or normalize_session_id(first.id)


def read_session_header(text: str) -> dict[str, str | None]:
    """Return ``sessionId`` and ``createdAt`` from a leading ``session`` line."""
    header: dict[str, str | None] = {"sessionId": None, "createdAt": None}
    first_line = (text or "").split("\n", 1)[0].strip()
    if not first_line:
        return header
    try:
        obj = json.loads(first_line)
    except ValueError:
        return header
    if not isinstance(obj, dict) or obj.get("type") != "session":
        return header

    timestamp = obj.get("timestamp")
    if isinstance(timestamp, str) and timestamp:
        header["createdAt"] = timestamp
    header["sessionId"] = normalize_session_id(obj.get("sessionId")) or normalize_session_id(obj.get("id"))
    return header
