from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from datetime import datetime
import logging
from typing import Protocol

from dockwatch.log_store import LogStore
from dockwatch.models import STATS_STATES, ContainerDetail, ContainerStats, ContainerSummary, NoticeLevel
from dockwatch.registry import ContainerRegistry
from dockwatch.state import DashboardState


class PollClient(Protocol):
    async def list_containers(self) -> list[ContainerSummary]: ...

    async def inspect(self, container_id: str) -> ContainerDetail: ...

    async def stats(self, container_id: str, alive: bool = True) -> ContainerStats: ...

    def logs(self, container_id: str, since: int = 0, stderr: bool = True) -> AsyncIterator[str]: ...


async def _sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> bool:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


class CancelToken:
    """Cooperative stop signal for one container's log tail."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> bool:
        return await _sleep_or_stop(self._event, seconds)


class PollScheduler:
    """Drives the inventory poll and owns every per-container background task.

    A tick only starts the inventory fetch; stats, inspect and log work run as
    their own tasks and merge into the registry as they complete.
    """

    def __init__(
        self,
        client: PollClient,
        registry: ContainerRegistry,
        log_store: LogStore,
        state: DashboardState,
        logger: logging.Logger,
        *,
        interval_sec: float = 1.0,
        show_std_err: bool = True,
        is_self: Callable[[ContainerSummary], bool] | None = None,
        show_self: bool = False,
    ) -> None:
        self._client = client
        self._registry = registry
        self._log_store = log_store
        self._state = state
        self._logger = logger

        self._interval_sec = interval_sec
        self._show_std_err = show_std_err
        self._is_self = is_self
        self._show_self = show_self

        self._wake = asyncio.Event()
        self._stopping = False

        self._inventory_task: asyncio.Task | None = None
        self._stats_tasks: dict[str, asyncio.Task] = {}
        self._log_tails: dict[str, tuple[CancelToken, asyncio.Task]] = {}
        self._backfilled: set[str] = set()
        self._suspended: set[str] = set()
        self._background: set[asyncio.Task] = set()

    @property
    def interval_sec(self) -> float:
        return self._interval_sec

    def has_log_tail(self, container_id: str) -> bool:
        entry = self._log_tails.get(container_id)
        return entry is not None and not entry[1].done()

    def stats_in_flight(self, container_id: str) -> bool:
        task = self._stats_tasks.get(container_id)
        return task is not None and not task.done()

    def is_suspended(self, container_id: str) -> bool:
        return container_id in self._suspended

    def request_refresh(self) -> None:
        self._wake.set()

    def stop(self) -> None:
        self._stopping = True
        self._wake.set()

    def suspend(self, container_id: str) -> None:
        self._suspended.add(container_id)
        self._cancel_log_tail(container_id)
        self._logger.info("heartbeat_suspended", extra={"container_id": container_id})

    def resume(self, container_id: str) -> None:
        self._suspended.discard(container_id)
        self._logger.info("heartbeat_resumed", extra={"container_id": container_id})
        self.request_refresh()

    async def run(self) -> None:
        self._logger.info("heartbeat_started", extra={"interval_sec": self._interval_sec})
        try:
            while not self._stopping:
                self.tick()
                await _sleep_or_stop(self._wake, self._interval_sec)
                self._wake.clear()
        finally:
            await self.shutdown()
            self._logger.info("heartbeat_stopped")

    def tick(self) -> bool:
        if self._inventory_task is not None and not self._inventory_task.done():
            self._state.skipped_ticks += 1
            self._logger.debug("heartbeat_tick_skipped", extra={"skipped": self._state.skipped_ticks})
            return False
        self._state.ticks += 1
        self._inventory_task = asyncio.get_running_loop().create_task(self._poll_inventory())
        return True

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _split_self(self, summaries: list[ContainerSummary]) -> tuple[list[ContainerSummary], list[str]]:
        if self._is_self is None:
            return summaries, []
        visible: list[ContainerSummary] = []
        own: list[str] = []
        for summary in summaries:
            if self._is_self(summary):
                own.append(summary.id)
                if not self._show_self:
                    continue
            visible.append(summary)
        return visible, own

    async def _poll_inventory(self) -> None:
        try:
            summaries = await self._client.list_containers()
        except Exception as exc:  # noqa: BLE001
            if self._state.connected:
                self._registry.add_notice(f"unable to reach docker: {exc}", level=NoticeLevel.error)
            self._state.connected = False
            self._state.last_error = f"inventory_failed: {exc}"
            self._state.last_event = "inventory_failed"
            self._state.touch()
            self._logger.warning("inventory_poll_failed", extra={"error": str(exc)})
            return

        self._state.connected = True
        self._state.last_poll_at = datetime.now()
        self._state.last_event = "inventory"

        visible, own = self._split_self(summaries)
        result = self._registry.upsert(visible)
        if own and self._show_self:
            self._registry.mark_self(own)

        for container_id in result.removed:
            self._forget(container_id)
        for container_id in result.left_polling:
            self._registry.mark_stats_stale(container_id)
        for container_id in result.added:
            self._spawn(self._fetch_detail(container_id))

        for record in self._registry.records():
            container_id = record.id
            if container_id in self._suspended:
                continue
            if record.state in STATS_STATES:
                self._ensure_stats(container_id)
            if record.is_self:
                continue
            if record.is_alive:
                self._ensure_log_tail(container_id)
            else:
                if self._cancel_log_tail(container_id):
                    # pick up whatever was written before it stopped
                    self._backfilled.discard(container_id)
                if container_id not in self._backfilled:
                    self._backfill(container_id)

        self._log_store.prune(self._registry.ids())
        self._state.touch()

    def _forget(self, container_id: str) -> None:
        self._cancel_log_tail(container_id)
        self._backfilled.discard(container_id)
        self._suspended.discard(container_id)

    async def _fetch_detail(self, container_id: str) -> None:
        try:
            detail = await self._client.inspect(container_id)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("inspect_failed", extra={"container_id": container_id, "error": str(exc)})
            return
        self._registry.apply_detail(container_id, detail)

    def _ensure_stats(self, container_id: str) -> None:
        if self.stats_in_flight(container_id):
            return
        task = self._spawn(self._fetch_stats(container_id))
        self._stats_tasks[container_id] = task

        def _release(done: asyncio.Task, container_id: str = container_id) -> None:
            if self._stats_tasks.get(container_id) is done:
                del self._stats_tasks[container_id]

        task.add_done_callback(_release)

    async def _fetch_stats(self, container_id: str) -> None:
        record = self._registry.get(container_id)
        alive = record.is_alive if record is not None else False
        try:
            stats = await self._client.stats(container_id, alive=alive)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("stats_fetch_failed", extra={"container_id": container_id, "error": str(exc)})
            self._registry.mark_stats_stale(container_id)
            return
        self._registry.update_stats(container_id, stats)

    def _ensure_log_tail(self, container_id: str) -> None:
        if self.has_log_tail(container_id):
            return
        token = CancelToken()
        task = self._spawn(self._tail_logs(container_id, token))
        self._log_tails[container_id] = (token, task)
        self._backfilled.add(container_id)

    def _cancel_log_tail(self, container_id: str) -> bool:
        entry = self._log_tails.pop(container_id, None)
        if entry is None:
            return False
        token, _ = entry
        token.cancel()
        return True

    def _backfill(self, container_id: str) -> None:
        self._backfilled.add(container_id)
        self._spawn(self._fetch_logs_once(container_id, CancelToken()))

    async def _tail_logs(self, container_id: str, token: CancelToken) -> None:
        self._logger.debug("log_tail_started", extra={"container_id": container_id})
        while not token.cancelled:
            await self._fetch_logs_once(container_id, token)
            if await token.sleep(self._interval_sec):
                break
        self._logger.debug("log_tail_stopped", extra={"container_id": container_id})

    async def _fetch_logs_once(self, container_id: str, token: CancelToken) -> int:
        batch: list[str] = []
        since = self._log_store.since(container_id)
        try:
            async with aclosing(
                self._client.logs(container_id, since=since, stderr=self._show_std_err)
            ) as stream:
                async for line in stream:
                    if token.cancelled:
                        break
                    batch.append(line)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("log_fetch_failed", extra={"container_id": container_id, "error": str(exc)})
        if not batch:
            return 0
        return self._log_store.ingest(container_id, batch)

    async def shutdown(self) -> None:
        for token, _ in self._log_tails.values():
            token.cancel()
        self._log_tails.clear()
        tasks = list(self._background)
        if self._inventory_task is not None:
            tasks.append(self._inventory_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._stats_tasks.clear()
