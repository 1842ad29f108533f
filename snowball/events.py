"""
Domain events published by the snowball engine
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional
import asyncio
import logging

logger = logging.getLogger(__name__)


@dataclass
class SnowballEvent:
    repository_id: str
    occurred_at: datetime = field(default_factory=datetime.utcnow, init=False)

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event"] = self.name
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


@dataclass
class CandidateDecided(SnowballEvent):
    candidate_id: str = ""
    email: str = ""
    status: str = ""
    rejection_reason: Optional[str] = None
    quality_score: Optional[float] = None
    hop_depth: int = 0


@dataclass
class MemberAdded(SnowballEvent):
    member_id: str = ""
    email: str = ""
    hop_depth: int = 0
    source_member_id: Optional[str] = None
    status: str = ""


@dataclass
class JobCompleted(SnowballEvent):
    job_id: str = ""
    status: str = ""
    sent: int = 0
    bounced: int = 0
    skipped: int = 0
    last_error: Optional[str] = None


class EventPublisher(ABC):
    @abstractmethod
    async def publish(self, event: SnowballEvent) -> None:
        pass


class QueueEventPublisher(EventPublisher):
    """
    Fan-out to in-process asyncio.Queue subscribers.

    A full subscriber queue drops the event for that subscriber only.
    """

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def publish(self, event: SnowballEvent) -> None:
        logger.debug(f"Event {event.name} for repository {event.repository_id}")
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Event subscriber queue full, dropping {event.name}")
