from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum
import queue
from typing import Any

from dockwatch.models import CommandKind

DEFAULT_CAPACITY = 32


class ActionType(StrEnum):
    control = "control"
    refresh = "refresh"
    shutdown = "shutdown"


@dataclass(frozen=True, slots=True)
class Action:
    type: ActionType
    container_id: str = ""
    command: CommandKind | None = None

    @classmethod
    def control(cls, container_id: str, command: CommandKind) -> Action:
        return cls(type=ActionType.control, container_id=container_id, command=command)

    @classmethod
    def refresh(cls) -> Action:
        return cls(type=ActionType.refresh)

    @classmethod
    def shutdown(cls) -> Action:
        return cls(type=ActionType.shutdown)


class MessageBus:
    """Bounded action channel into the engine plus an event queue out to the UI.

    A full action channel blocks the sender instead of dropping input.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._capacity = capacity
        self._actions: asyncio.Queue[Action] = asyncio.Queue(maxsize=capacity)
        self._events: queue.Queue[dict[str, Any]] = queue.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def capacity(self) -> int:
        return self._capacity

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def pending_actions(self) -> int:
        return self._actions.qsize()

    async def put(self, action: Action) -> None:
        await self._actions.put(action)

    async def get(self) -> Action:
        return await self._actions.get()

    def task_done(self) -> None:
        self._actions.task_done()

    def send(self, action: Action, timeout: float | None = None) -> None:
        """Thread-safe send from the input side, waiting while the channel is full."""
        if self._loop is None or not self._loop.is_running():
            raise RuntimeError("message_bus_not_running")
        future = asyncio.run_coroutine_threadsafe(self.put(action), self._loop)
        future.result(timeout=timeout)

    def emit(self, event_type: str, payload: dict[str, Any] | None = None) -> None:
        self._events.put({"type": event_type, "payload": payload or {}})

    def drain_events(self, limit: int = 200) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        while len(events) < limit:
            try:
                events.append(self._events.get_nowait())
            except queue.Empty:
                break
        return events
