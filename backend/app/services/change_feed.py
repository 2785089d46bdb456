"""
Realtime change feed

Each subscription is an owned handle: whoever subscribes closes it, either
explicitly or by leaving an ``async with`` block. Channels are named per
scope, never shared between subscribers.
"""
import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from supabase import AsyncClient

logger = logging.getLogger(__name__)


@dataclass
class ChangeEvent:
    table: str
    type: str
    record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)


ChangeHandler = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


class Subscription:
    def __init__(self, name: str, on_close: Callable[[], Awaitable[None]]):
        self.name = name
        self._on_close = on_close
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        logger.info(f"Closing realtime subscription {self.name}")
        await self._on_close()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class ChangeFeed(ABC):
    @abstractmethod
    async def subscribe(
        self,
        channel_name: str,
        table: str,
        handler: ChangeHandler,
        event: str = "*",
        row_filter: Optional[str] = None,
    ) -> Subscription:
        """Start delivering changes on ``table`` matching ``row_filter`` to ``handler``"""
        ...


def event_from_payload(table: str, payload: Dict[str, Any]) -> ChangeEvent:
    """Build a ChangeEvent from a postgres_changes payload"""
    data = payload.get("data", payload) if isinstance(payload, dict) else {}
    record = data.get("record") or data.get("new") or {}
    old_record = data.get("old_record") or data.get("old") or {}
    event_type = data.get("type") or data.get("eventType") or "*"
    return ChangeEvent(table=data.get("table") or table, type=event_type, record=record, old_record=old_record)


class SupabaseChangeFeed(ChangeFeed):
    def __init__(self, client: AsyncClient):
        self.client = client
        self._tasks: Set[asyncio.Task] = set()

    async def subscribe(
        self,
        channel_name: str,
        table: str,
        handler: ChangeHandler,
        event: str = "*",
        row_filter: Optional[str] = None,
    ) -> Subscription:
        logger.info(f"Setting up realtime subscription {channel_name} on {table} ({row_filter})")

        def deliver(payload):
            result = handler(event_from_payload(table, payload))
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._finish_task)

        channel = self.client.channel(channel_name)
        channel.on_postgres_changes(event, deliver, table=table, schema="public", filter=row_filter)
        await channel.subscribe(lambda status, err=None: logger.info(f"Realtime subscription {channel_name} status: {status}"))

        async def close():
            await self.client.remove_channel(channel)

        return Subscription(channel_name, close)

    def _finish_task(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Realtime handler failed: {task.exception()}")
