#!/usr/bin/env python3
"""Scan a sessions directory for risky tool calls and print a report.

Usage:
  python -m inspector.scripts.danger_report
  python -m inspector.scripts.danger_report --sessions-dir ~/.clawdbot/agents/main/sessions
  python -m inspector.scripts.danger_report --severity critical --json
"""
from __future__ import annotations

import argparse
import json
from collections import Counter
from pathlib import Path

from inspector import config
from inspector.corpus import SessionCorpus
from inspector.danger_rules import RuleConfigError, load_rule_set
from inspector.models import DangerHit
from inspector.scanner import scan_corpus


def _filter_hits(results: dict[str, list[DangerHit]], severity: str) -> dict[str, list[DangerHit]]:
    if not severity:
        return results
    filtered: dict[str, list[DangerHit]] = {}
    for filename, hits in results.items():
        kept = [hit for hit in hits if hit.severity == severity]
        if kept:
            filtered[filename] = kept
    return filtered


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--sessions-dir", default=str(config.SESSIONS_DIR))
    parser.add_argument("--rules", default="", help="Rule file (JSON or YAML); defaults to the active rule set")
    parser.add_argument("--severity", choices=["critical", "warning"], default="")
    parser.add_argument("--limit", type=int, default=20, help="Hits shown per session")
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args(argv)

    sessions_dir = Path(args.sessions_dir).expanduser()
    if not sessions_dir.is_dir():
        print(f"Sessions dir not found: {sessions_dir}")
        return 1

    try:
        rule_set = load_rule_set(Path(args.rules).expanduser() if args.rules else None)
    except RuleConfigError as exc:
        print(f"Rule configuration error: {exc}")
        return 2

    corpus = SessionCorpus(sessions_dir)
    texts = {}
    for filename in corpus.filenames():
        text = corpus.read_text(filename)
        if text is not None:
            texts[filename] = text
    results = _filter_hits(scan_corpus(texts, rule_set), args.severity)

    if args.json:
        payload = {
            "sessions_dir": str(sessions_dir),
            "rules": rule_set.source,
            "scanned": len(texts),
            "flagged": len(results),
            "hits": {
                filename: [hit.model_dump(mode="json") for hit in hits]
                for filename, hits in results.items()
            },
        }
        print(json.dumps(payload, indent=2))
        return 0

    categories = Counter(hit.category for hits in results.values() for hit in hits)
    print(f"Sessions: {sessions_dir}")
    print(f"Rules: {rule_set.source}")
    print(f"Scanned: {len(texts)}  Flagged: {len(results)}")
    for category, count in categories.most_common():
        print(f"  {category}: {count}")
    print("")
    for filename, hits in sorted(results.items()):
        print(f"{filename} ({len(hits)} hits)")
        for hit in hits[: max(1, args.limit)]:
            print(f"    [{hit.severity.value}] {hit.category} msg={hit.msgId} {hit.command}")
        if len(hits) > args.limit:
            print(f"    ... {len(hits) - args.limit} more")
        print("")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
