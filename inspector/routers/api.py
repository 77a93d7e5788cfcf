"""API routers for sessions, danger results and CSV metadata."""
from __future__ import annotations

import asyncio

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from inspector import config
from inspector.csv_metadata import parse_csv, read_csv_text, rows_by_filename
from inspector.models import DangerHit, ParsedSessionResponse, SessionFileInfo, SessionStatus
from inspector.session_sync import SessionNotFoundError


def _get_state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return value


# ── Sessions router ─────────────────────────────────────────────────

sessions_router = APIRouter(prefix="/api", tags=["sessions"])


@sessions_router.get("/sessions", response_model=list[SessionFileInfo])
async def list_sessions(request: Request):
    """Session files with size, timestamps, session id and lifecycle status."""
    corpus = _get_state(request, "corpus")
    return await asyncio.to_thread(corpus.list_sessions)


@sessions_router.get("/meta", response_model=dict[str, SessionStatus])
async def get_session_meta(request: Request):
    corpus = _get_state(request, "corpus")
    return await asyncio.to_thread(corpus.statuses)


@sessions_router.get("/counts", response_model=dict[str, int])
async def get_message_counts(request: Request):
    corpus = _get_state(request, "corpus")
    return await asyncio.to_thread(corpus.message_counts)


@sessions_router.get("/search", response_model=list[str])
async def search_sessions(request: Request, q: str = Query("", description="Case-insensitive content search")):
    corpus = _get_state(request, "corpus")
    return await asyncio.to_thread(corpus.search, q)


@sessions_router.get("/session/{filename}", response_class=PlainTextResponse)
async def get_session_text(request: Request, filename: str):
    """Raw JSONL contents of one session."""
    corpus = _get_state(request, "corpus")
    text = await asyncio.to_thread(corpus.read_text, filename)
    if text is None:
        raise HTTPException(status_code=404, detail="Not found")
    return PlainTextResponse(text)


@sessions_router.get("/session/{filename}/parsed", response_model=ParsedSessionResponse)
async def get_parsed_session(request: Request, filename: str):
    """Parsed entries, parse errors and danger hits; refreshes read progress."""
    session_sync = _get_state(request, "session_sync")
    try:
        return await asyncio.to_thread(session_sync.load_session, filename)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Not found")


@sessions_router.get("/csv", response_class=PlainTextResponse)
async def get_csv(request: Request):
    csv_path = getattr(request.app.state, "csv_path", None) or config.CSV_PATH
    text = read_csv_text(csv_path)
    if text is None:
        raise HTTPException(status_code=404, detail="No CSV")
    return PlainTextResponse(text, media_type="text/csv")


@sessions_router.get("/csv/rows", response_model=dict[str, dict[str, str]])
async def get_csv_rows(request: Request):
    """CSV rows keyed by their ``Filename`` column."""
    csv_path = getattr(request.app.state, "csv_path", None) or config.CSV_PATH
    text = read_csv_text(csv_path)
    if text is None:
        raise HTTPException(status_code=404, detail="No CSV")
    return rows_by_filename(parse_csv(text))


# ── Danger router ───────────────────────────────────────────────────

danger_router = APIRouter(prefix="/api/danger", tags=["danger"])


@danger_router.get("", response_model=dict[str, list[DangerHit]])
async def get_danger(request: Request):
    """Danger hits per session file; sessions without hits are omitted."""
    danger_index = _get_state(request, "danger_index")
    return await asyncio.to_thread(danger_index.all_hits)


@danger_router.get("/rules")
async def get_danger_rules(request: Request):
    rule_set = _get_state(request, "rule_set")
    return {
        "source": rule_set.source,
        "patternRules": len(rule_set.pattern_rules),
        "toolRules": len(rule_set.tool_rules),
        "categories": sorted({rule.category for rule in rule_set.rules}),
    }
