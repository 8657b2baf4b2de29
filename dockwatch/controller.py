from __future__ import annotations

import asyncio
from collections.abc import Callable
import logging
import socket
import threading
from typing import Any

from dockwatch.bus import Action, ActionType, MessageBus
from dockwatch.config import Settings
from dockwatch.dispatcher import CommandDispatcher
from dockwatch.errors import CommandRejected, DockwatchError, RuntimeUnavailableError
from dockwatch.heartbeat import PollScheduler
from dockwatch.log_store import LogStore
from dockwatch.logger import get_logger
from dockwatch.models import (
    CommandKind,
    ContainerSummary,
    FilterBy,
    LogView,
    NoticeLevel,
    RejectionReason,
    RegistrySnapshot,
    SortColumn,
    SortSpec,
)
from dockwatch.registry import ContainerRegistry
from dockwatch.runtime_client import DockerClient
from dockwatch.state import DashboardState

ENTRY_POINT = "/app/dockwatch"

_REJECTION_TEXT = {
    RejectionReason.duplicate: "already in progress",
    RejectionReason.no_op: "nothing to do",
    RejectionReason.invalid_state: "not available in current state",
    RejectionReason.not_found: "container no longer exists",
}


def build_self_matcher(hostname: str) -> Callable[[ContainerSummary], bool]:
    """Recognise the dashboard's own container by entry point or by hostname."""

    def _matches(summary: ContainerSummary) -> bool:
        if summary.command.startswith(ENTRY_POINT):
            return True
        return bool(hostname) and summary.id.startswith(hostname)

    return _matches


class DashboardController:
    STARTUP_TIMEOUT_SEC = 15
    SHUTDOWN_TIMEOUT_SEC = 3

    def __init__(
        self,
        settings: Settings,
        state: DashboardState,
        logger: logging.Logger,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._settings = settings
        self._state = state
        self._logger = logger
        self._client_factory = client_factory or self._create_runtime_client

        self._bus = MessageBus(settings.action_queue_size)
        self._registry = ContainerRegistry(on_change=state.touch)
        self._log_store = LogStore(
            mode=settings.log_mode,
            show_timestamp=settings.show_timestamp,
            on_change=state.touch,
        )

        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None
        self._ready = threading.Event()
        self._startup_error: BaseException | None = None

        self._client: Any = None
        self._heartbeat: PollScheduler | None = None
        self._dispatcher: CommandDispatcher | None = None

    @property
    def bus(self) -> MessageBus:
        return self._bus

    @property
    def registry(self) -> ContainerRegistry:
        return self._registry

    @property
    def log_store(self) -> LogStore:
        return self._log_store

    @property
    def state(self) -> DashboardState:
        return self._state

    @property
    def dispatcher(self) -> CommandDispatcher | None:
        return self._dispatcher

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, timeout: float | None = None) -> None:
        if self.is_running():
            self.emit("console", {"message": "engine_already_running"})
            return

        self._ready.clear()
        self._startup_error = None
        self._state.engine_status = "starting"
        self._state.touch()

        self._thread = threading.Thread(target=self._run_thread, name="dockwatch-engine", daemon=True)
        self._thread.start()

        if not self._ready.wait(timeout or self.STARTUP_TIMEOUT_SEC):
            raise RuntimeUnavailableError("engine_start_timeout: docker daemon did not answer in time")
        if self._startup_error is not None:
            self._thread.join(timeout=self.SHUTDOWN_TIMEOUT_SEC)
            self._thread = None
            error = self._startup_error
            if isinstance(error, DockwatchError):
                raise error
            raise RuntimeUnavailableError(f"engine_start_failed: {error}") from error

    def shutdown(self) -> None:
        if self._loop is not None and self._stop_event is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._stop_event.set)
        if self._thread is not None:
            self._thread.join(timeout=self.SHUTDOWN_TIMEOUT_SEC)
            if self._thread.is_alive():
                self._logger.warning("engine_stop_pending")
            else:
                self._thread = None

    # read side, safe to call from the render thread

    def snapshot(self) -> RegistrySnapshot:
        return self._registry.get_snapshot()

    def log_view(self, container_id: str) -> LogView:
        return self._log_store.view(container_id)

    # input side

    def dispatch(self, container_id: str, kind: CommandKind) -> None:
        self._bus.send(Action.control(container_id, kind))

    def dispatch_exec(self, container_id: str) -> None:
        self._bus.send(Action.control(container_id, CommandKind.exec))

    def refresh(self) -> None:
        self._bus.send(Action.refresh())

    def set_filter(self, term: str | None, by: FilterBy | None = None) -> None:
        self._registry.set_filter(term, by)

    def cycle_filter_by(self, forward: bool = True) -> FilterBy:
        return self._registry.cycle_filter_by(forward)

    def set_sort(self, column: SortColumn) -> SortSpec | None:
        return self._registry.set_sort(column)

    def reset_sort(self) -> None:
        self._registry.reset_sort()

    def clear_notices(self) -> None:
        self._registry.clear_notices()

    def open_logs(self, container_id: str) -> LogView:
        self._log_store.open(container_id)
        return self._log_store.view(container_id)

    def dismiss_logs(self, container_id: str) -> None:
        self._log_store.dismiss(container_id, live=self._registry.get(container_id) is not None)

    def search_logs(self, container_id: str, term: str | None, case_sensitive: bool = False) -> list[int]:
        return self._log_store.set_search(container_id, term, case_sensitive)

    def clear_log_search(self, container_id: str) -> None:
        self._log_store.clear_search(container_id)

    def next_match(self, container_id: str) -> int | None:
        return self._log_store.search_step(container_id, forward=True)

    def previous_match(self, container_id: str) -> int | None:
        return self._log_store.search_step(container_id, forward=False)

    def scroll_logs(self, container_id: str, position: int, viewport_height: int) -> int:
        return self._log_store.scroll_vertical(container_id, position, viewport_height)

    def scroll_logs_horizontal(self, container_id: str, position: int, viewport_width: int) -> int:
        return self._log_store.scroll_horizontal(container_id, position, viewport_width)

    def scroll_logs_to_start(self, container_id: str) -> None:
        self._log_store.scroll_to_start(container_id)

    def scroll_logs_to_end(self, container_id: str) -> None:
        self._log_store.scroll_to_end(container_id)

    def emit(self, event_type: str, payload: dict[str, Any] | None = None) -> None:
        self._bus.emit(event_type, payload)

    def _emit_status(self) -> None:
        self.emit(
            "status",
            {
                "engine": self._state.engine_status,
                "connected": self._state.connected,
                "docker_host": self._state.docker_host,
            },
        )

    def _on_engine_event(self, event_type: str, payload: dict[str, Any]) -> None:
        if event_type == "exec_started":
            self._state.exec_container_id = payload.get("container_id", "")
        elif event_type == "exec_finished":
            self._state.exec_container_id = ""
        self._state.touch()
        self.emit(event_type, payload)

    def _create_runtime_client(self) -> DockerClient:
        return DockerClient(
            host=self._settings.docker_host,
            timeout=self._settings.request_timeout_sec,
            logger=get_logger("runtime"),
            exec_shell=self._settings.exec_shell,
        )

    def _run_thread(self) -> None:
        try:
            asyncio.run(self._run())
        except Exception as exc:  # noqa: BLE001
            self._logger.error("engine_crashed", extra={"error": str(exc)})
            if not self._ready.is_set():
                self._startup_error = exc
                self._ready.set()

    async def _run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._bus.bind(self._loop)

        try:
            await self._initialize()
        except Exception as exc:  # noqa: BLE001
            self._logger.error("engine_start_failed", extra={"error": str(exc)})
            self._state.engine_status = "failed"
            self._state.last_error = str(exc)
            self._state.touch()
            self._startup_error = exc
            if self._client is not None:
                await self._client.close()
            self._ready.set()
            return

        self._ready.set()
        heartbeat_task = asyncio.create_task(self._heartbeat.run())
        consumer_task = asyncio.create_task(self._consume_actions())

        await self._stop_event.wait()

        self._heartbeat.stop()
        consumer_task.cancel()
        await asyncio.gather(heartbeat_task, consumer_task, return_exceptions=True)
        await self._dispatcher.shutdown()
        await self._client.close()

        self._state.engine_status = "stopped"
        self._state.connected = False
        self._state.touch()
        self._logger.info("engine_stopped")
        self._emit_status()

    async def _initialize(self) -> None:
        self._client = self._client_factory()
        await self._client.ping()

        self._state.connected = True
        self._state.engine_status = "running"
        self._state.last_event = "initialized"
        self._state.touch()

        is_self = None
        if self._settings.in_container:
            is_self = build_self_matcher(socket.gethostname())

        self._heartbeat = PollScheduler(
            self._client,
            self._registry,
            self._log_store,
            self._state,
            get_logger("heartbeat"),
            interval_sec=self._settings.interval_sec,
            show_std_err=self._settings.show_std_err,
            is_self=is_self,
            show_self=self._settings.show_self,
        )
        self._dispatcher = CommandDispatcher(
            self._client,
            self._registry,
            self._heartbeat,
            get_logger("dispatcher"),
            emit=self._on_engine_event,
        )
        self._logger.info(
            "engine_started",
            extra={"interval_sec": self._settings.interval_sec, "in_container": self._settings.in_container},
        )
        self._emit_status()

    async def _consume_actions(self) -> None:
        while True:
            action = await self._bus.get()
            try:
                self._handle_action(action)
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("action_failed", extra={"action": action.type.value, "error": str(exc)})
            finally:
                self._bus.task_done()

    def _handle_action(self, action: Action) -> None:
        if self._heartbeat is None or self._dispatcher is None:
            return
        if action.type == ActionType.shutdown:
            if self._stop_event is not None:
                self._stop_event.set()
            return
        if action.type == ActionType.refresh:
            self._heartbeat.request_refresh()
            return
        if action.command is None:
            return

        try:
            command = self._dispatcher.submit(action.container_id, action.command)
        except CommandRejected as exc:
            self._on_rejected(exc)
            return
        self.emit(
            "command_accepted",
            {"container_id": command.container_id, "command": command.kind.value, "token": command.token},
        )

    def _on_rejected(self, exc: CommandRejected) -> None:
        command = exc.command
        record = self._registry.get(command.container_id)
        name = record.name if record is not None else command.container_id[:12]
        self._registry.add_notice(
            f"{command.kind.value} {name}: {_REJECTION_TEXT[exc.reason]}",
            level=NoticeLevel.warning,
            container_id=command.container_id,
            token=exc.existing_token,
        )
        self._logger.info(
            "command_rejected",
            extra={
                "container_id": command.container_id,
                "command": command.kind.value,
                "reason": exc.reason.value,
            },
        )
        self.emit(
            "command_rejected",
            {
                "container_id": command.container_id,
                "command": command.kind.value,
                "reason": exc.reason.value,
                "existing_token": exc.existing_token,
                "existing_status": exc.existing_status.value if exc.existing_status else None,
            },
        )
