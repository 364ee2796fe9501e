from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse

from medquiz.core.event_bus import event_bus

router = APIRouter(prefix="/events", tags=["events"])


@router.get("/history")
async def event_history(session_id: str | None = Query(default=None)):
    return {"events": event_bus.history(session_id)}


@router.get("/stream")
async def stream_events():
    queue = event_bus.subscribe(replay_last=20)

    async def generator():
        try:
            while True:
                event = await queue.get()
                yield f"data: {json.dumps(event)}\n\n"
        except asyncio.CancelledError:
            return
        finally:
            event_bus.unsubscribe(queue)

    return StreamingResponse(generator(), media_type="text/event-stream")
