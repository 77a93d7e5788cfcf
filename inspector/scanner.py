"""Danger scanner: apply the compiled rule set to parsed session entries."""
from __future__ import annotations

import logging
import time
from typing import Any, Iterable, Mapping

from inspector.danger_rules import RuleSet
from inspector.models import DangerHit, JsonValue, SessionEntry
from inspector.observability import record_scan, start_span
from inspector.parsers.sessions import parse_session_text

logger = logging.getLogger("inspector.scanner")

_MIN_STRING_LENGTH = 3
_ARGUMENT_KEYS = ("arguments", "input")


def collect_strings(value: JsonValue) -> list[str]:
    """Depth-first list of every string longer than two characters in a JSON tree."""
    strings: list[str] = []
    stack: list[Any] = [value]
    while stack:
        current = stack.pop()
        if isinstance(current, str):
            if len(current) >= _MIN_STRING_LENGTH:
                strings.append(current)
        elif isinstance(current, dict):
            stack.extend(reversed(list(current.values())))
        elif isinstance(current, (list, tuple)):
            stack.extend(reversed(current))
    return strings


def tool_call_arguments(block: Mapping[str, Any]) -> tuple[bool, JsonValue]:
    """Return (present, payload) from ``arguments`` or the legacy ``input`` key."""
    for key in _ARGUMENT_KEYS:
        if key in block and block[key] is not None:
            return True, block[key]
    return False, None


def _tool_action(arguments: JsonValue) -> str:
    if not isinstance(arguments, dict):
        return ""
    action = arguments.get("action")
    return action if isinstance(action, str) else ""


def scan_tool_call(
    block: Mapping[str, Any],
    msg_id: str | None,
    rule_set: RuleSet,
    seen: set[tuple[str, str]],
) -> list[DangerHit]:
    """Hits for a single ``toolCall`` block.

    ``seen`` holds ``(category, string)`` pairs already reported for the
    current message and is updated in place.
    """
    present, arguments = tool_call_arguments(block)
    if not present:
        return []

    raw_name = block.get("name")
    tool_name = raw_name if isinstance(raw_name, str) else ""
    action = _tool_action(arguments)

    hits: list[DangerHit] = []
    for tool_rule in rule_set.tool_rules:
        hits.extend(tool_rule.match(msg_id, tool_name, action))

    for text in collect_strings(arguments):
        for rule in rule_set.pattern_rules:
            key = (rule.category, text)
            if key in seen:
                continue
            if rule.first_match(text) is None:
                continue
            seen.add(key)
            hits.append(rule.hit(msg_id, tool_name, text))
    return hits


def scan_entry(entry: SessionEntry, rule_set: RuleSet) -> list[DangerHit]:
    if entry.type != "message" or entry.message is None:
        return []
    content = entry.message.content
    if not isinstance(content, list):
        return []

    hits: list[DangerHit] = []
    seen: set[tuple[str, str]] = set()
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "toolCall":
            continue
        try:
            hits.extend(scan_tool_call(block, entry.id, rule_set, seen))
        except Exception:
            logger.exception(
                "Skipping tool call in message %s (line %s)", entry.id, entry.lineNumber
            )
    return hits


def scan_entries(entries: Iterable[SessionEntry], rule_set: RuleSet) -> list[DangerHit]:
    """Danger hits for one session, in entry order. Empty list if none."""
    hits: list[DangerHit] = []
    for entry in entries:
        hits.extend(scan_entry(entry, rule_set))
    return hits


def scan_session_text(text: str, rule_set: RuleSet) -> list[DangerHit]:
    return scan_entries(parse_session_text(text).entries, rule_set)


def scan_corpus(sessions: Mapping[str, str], rule_set: RuleSet) -> dict[str, list[DangerHit]]:
    """Scan ``{filename: text}``; sessions without hits are omitted."""
    started = time.monotonic()
    results: dict[str, list[DangerHit]] = {}
    with start_span("inspector.scan_corpus", {"sessions": len(sessions)}):
        for filename, text in sessions.items():
            hits = scan_session_text(text, rule_set)
            if hits:
                results[filename] = hits
    record_scan(
        sum(len(hits) for hits in results.values()),
        (time.monotonic() - started) * 1000,
        sessions=len(sessions),
    )
    return results
