"""
    In-process change notification for image records.

    Subscribers receive every insert, update and delete for one owner. Each
    subscriber owns a bounded queue; a subscriber that stops draining its
    queue loses the oldest events rather than blocking publishers.
"""
import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Literal, Optional, Set
from pydantic import BaseModel, Field
import logging

log = logging.getLogger(__name__)

def _now() -> datetime:
    return datetime.now(timezone.utc)

class ChangeEvent(BaseModel):
    event: Literal["insert", "update", "delete"]
    user_id: str
    image_id: str
    record: Optional[Dict[str, Any]] = None
    at: datetime = Field(default_factory=_now)

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.model_dump(mode='json'))}\n\n"

class ChangeFeed:
    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def publish(self, event: ChangeEvent):
        for queue in list(self._subscribers.get(event.user_id, ())):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
        log.debug("Published %s for image %s", event.event, event.image_id)

    @asynccontextmanager
    async def subscribe(self, user_id: str) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers.setdefault(user_id, set()).add(queue)
        log.info("Subscriber added for user %s", user_id)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(user_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[user_id]
            log.info("Subscriber removed for user %s", user_id)

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, ()))
