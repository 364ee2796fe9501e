import asyncio
from collections import deque
from datetime import datetime, timezone


class EventBus:
    """In-process fan-out of session lifecycle events with a bounded replay history."""

    def __init__(self, history_size: int = 200):
        self._subscribers: list[asyncio.Queue] = []
        self._history: deque[dict] = deque(maxlen=history_size)

    def publish(self, event_type: str, session_id: str, data: dict) -> dict:
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            "session_id": session_id,
            "data": data,
        }
        self._history.append(event)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                continue
        return event

    def subscribe(self, replay_last: int = 10) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self._subscribers.append(queue)
        for event in list(self._history)[-replay_last:] if replay_last > 0 else []:
            queue.put_nowait(event)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def history(self, session_id: str | None = None) -> list[dict]:
        if session_id is None:
            return list(self._history)
        return [event for event in self._history if event["session_id"] == session_id]


event_bus = EventBus()
