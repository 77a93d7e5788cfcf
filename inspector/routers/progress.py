"""Read-progress API."""
from __future__ import annotations

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from inspector import config
from inspector.models import ProgressEntry
from inspector.session_sync import SessionNotFoundError

progress_router = APIRouter(prefix="/api/progress", tags=["progress"])


class MarkReadRequest(BaseModel):
    messageId: str = Field(..., min_length=1)


class LabelRequest(BaseModel):
    label: Optional[str] = None


class ProgressUpdateResponse(BaseModel):
    key: str
    progress: ProgressEntry


def _get_store(request: Request):
    store = getattr(request.app.state, "progress_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Progress store not initialized")
    return store


def _get_session_sync(request: Request):
    session_sync = getattr(request.app.state, "session_sync", None)
    if session_sync is None:
        raise HTTPException(status_code=503, detail="Session sync not initialized")
    return session_sync


@progress_router.get("")
async def get_progress(request: Request):
    """The full progress map, keyed by session id (or filename)."""
    return _get_store(request).to_payload()


@progress_router.post("")
async def replace_progress(request: Request):
    """Replace the whole progress map with a client-supplied document."""
    store = _get_store(request)
    limit = getattr(request.app.state, "max_progress_body_bytes", config.MAX_PROGRESS_BODY_BYTES)
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise HTTPException(status_code=413, detail="Payload too large")
    body = await request.body()
    if len(body) > limit:
        raise HTTPException(status_code=413, detail="Payload too large")
    try:
        store.replace_all(json.loads(body or b"null"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {exc}")
    return {"ok": True}


@progress_router.get("/status")
async def get_progress_status(request: Request):
    store = _get_store(request)
    return {
        "sessions": len(store.snapshot()),
        "savePending": store.save_pending,
        "lastSavedAt": store.last_saved_at,
        "lastSaveError": store.last_save_error,
    }


@progress_router.post("/{filename}/read", response_model=ProgressUpdateResponse)
async def mark_session_read(request: Request, filename: str, payload: MarkReadRequest):
    """Mark ``payload.messageId`` as the last reviewed message of a session."""
    session_sync = _get_session_sync(request)
    try:
        key, entry = await asyncio.to_thread(session_sync.mark_read, filename, payload.messageId)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Not found")
    return ProgressUpdateResponse(key=key, progress=entry)


@progress_router.put("/{filename}/label", response_model=ProgressUpdateResponse)
async def set_session_label(request: Request, filename: str, payload: LabelRequest):
    session_sync = _get_session_sync(request)
    try:
        key, entry = await asyncio.to_thread(session_sync.set_label, filename, payload.label)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Not found")
    return ProgressUpdateResponse(key=key, progress=entry)
