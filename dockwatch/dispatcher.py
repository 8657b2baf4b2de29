from __future__ import annotations

import asyncio
from collections import OrderedDict
import logging
import threading
from typing import Any, Callable, Protocol

from dockwatch.errors import CommandRejected
from dockwatch.exec_session import ExecSession
from dockwatch.models import (
    NO_OP_STATES,
    Command,
    CommandKind,
    CommandOutcome,
    CommandStatus,
    ContainerRecord,
    RejectionReason,
)
from dockwatch.registry import ContainerRegistry

STATUS_HISTORY_LIMIT = 256
# shell missing or not executable inside the container
EXEC_SPAWN_FAILURES = {126, 127}


class LifecycleClient(Protocol):
    async def lifecycle(self, container_id: str, kind: CommandKind) -> CommandOutcome: ...

    async def exec(self, container_id: str) -> ExecSession: ...


class HeartbeatControl(Protocol):
    def suspend(self, container_id: str) -> None: ...

    def resume(self, container_id: str) -> None: ...


class InFlightSet:
    """At most one executing command per (container id, command kind)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, CommandKind], Command] = {}

    def claim(self, command: Command) -> Command | None:
        key = (command.container_id, command.kind)
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                return existing
            self._entries[key] = command
            return None

    def release(self, command: Command) -> None:
        key = (command.container_id, command.kind)
        with self._lock:
            current = self._entries.get(key)
            if current is not None and current.token == command.token:
                del self._entries[key]

    def get(self, container_id: str, kind: CommandKind) -> Command | None:
        with self._lock:
            return self._entries.get((container_id, kind))

    def commands(self) -> list[Command]:
        with self._lock:
            return list(self._entries.values())

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def validate_transition(record: ContainerRecord, kind: CommandKind) -> RejectionReason | None:
    if record.state in NO_OP_STATES.get(kind, frozenset()):
        return RejectionReason.no_op
    if kind not in record.available_commands:
        return RejectionReason.invalid_state
    return None


class CommandDispatcher:
    def __init__(
        self,
        client: LifecycleClient,
        registry: ContainerRegistry,
        heartbeat: HeartbeatControl | None,
        logger: logging.Logger,
        emit: Callable[[str, dict[str, Any]], None] | None = None,
    ) -> None:
        self._client = client
        self._registry = registry
        self._heartbeat = heartbeat
        self._logger = logger
        self._emit = emit

        self._in_flight = InFlightSet()
        self._statuses: OrderedDict[str, CommandStatus] = OrderedDict()
        self._tasks: set[asyncio.Task] = set()
        self._exec_sessions: dict[str, ExecSession] = {}

    @property
    def in_flight(self) -> InFlightSet:
        return self._in_flight

    def status(self, token: str) -> CommandStatus | None:
        return self._statuses.get(token)

    def submit(self, container_id: str, kind: CommandKind) -> Command:
        command = Command(kind=kind, container_id=container_id)

        record = self._registry.get(container_id)
        if record is None:
            raise CommandRejected(RejectionReason.not_found, command)

        existing = self._in_flight.claim(command)
        if existing is not None:
            raise CommandRejected(
                RejectionReason.duplicate,
                command,
                existing_token=existing.token,
                existing_status=self._statuses.get(existing.token, CommandStatus.running),
            )

        reason = validate_transition(record, kind)
        if reason is not None:
            self._in_flight.release(command)
            raise CommandRejected(reason, command)

        self._set_status(command.token, CommandStatus.running)
        task = asyncio.get_running_loop().create_task(self._execute(command))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._logger.info(
            "command_accepted",
            extra={"container_id": container_id, "command": kind.value, "token": command.token},
        )
        return command

    def _set_status(self, token: str, status: CommandStatus) -> None:
        self._statuses[token] = status
        self._statuses.move_to_end(token)
        while len(self._statuses) > STATUS_HISTORY_LIMIT:
            self._statuses.popitem(last=False)

    def _emit_event(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._emit is None:
            return
        try:
            self._emit(event_type, payload)
        except Exception:  # noqa: BLE001
            return

    async def _execute(self, command: Command) -> None:
        try:
            if command.kind == CommandKind.exec:
                outcome = await self._run_exec(command)
            else:
                outcome = await self._client.lifecycle(command.container_id, command.kind)
        except asyncio.CancelledError:
            self._finish(command, CommandOutcome.failure("cancelled"))
            raise
        except Exception as exc:  # noqa: BLE001
            outcome = CommandOutcome.failure(str(exc))
        self._finish(command, outcome)

    def _finish(self, command: Command, outcome: CommandOutcome) -> None:
        self._in_flight.release(command)
        self._set_status(command.token, CommandStatus.succeeded if outcome.ok else CommandStatus.failed)
        self._registry.apply_command_result(command.container_id, command.kind, outcome, token=command.token)
        if outcome.ok:
            self._logger.info(
                "command_succeeded",
                extra={"container_id": command.container_id, "command": command.kind.value, "token": command.token},
            )
        else:
            self._logger.warning(
                "command_failed",
                extra={
                    "container_id": command.container_id,
                    "command": command.kind.value,
                    "token": command.token,
                    "error": outcome.error,
                },
            )
        self._emit_event(
            "command_finished",
            {
                "container_id": command.container_id,
                "command": command.kind.value,
                "token": command.token,
                "ok": outcome.ok,
                "error": outcome.error,
            },
        )

    async def _run_exec(self, command: Command) -> CommandOutcome:
        container_id = command.container_id
        if self._heartbeat is not None:
            self._heartbeat.suspend(container_id)
        self._emit_event("exec_started", {"container_id": container_id, "token": command.token})
        try:
            session = await self._client.exec(container_id)
            self._exec_sessions[container_id] = session
            returncode = await session.wait()
        finally:
            self._exec_sessions.pop(container_id, None)
            if self._heartbeat is not None:
                self._heartbeat.resume(container_id)
            self._emit_event("exec_finished", {"container_id": container_id, "token": command.token})

        if returncode in EXEC_SPAWN_FAILURES:
            return CommandOutcome.failure(f"exec_failed rc={returncode}")
        return CommandOutcome.success()

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for session in list(self._exec_sessions.values()):
            await session.terminate()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
