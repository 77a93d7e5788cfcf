"""Server-Sent-Events stream of session file changes."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

events_router = APIRouter(prefix="/api/events", tags=["events"])


@events_router.get("")
async def stream_events(request: Request):
    broker = getattr(request.app.state, "broker", None)
    if broker is None:
        raise HTTPException(status_code=503, detail="Event broker not initialized")
    queue = broker.subscribe()
    return StreamingResponse(
        broker.stream(queue),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
