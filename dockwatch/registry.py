from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
import threading
from typing import Any

from dockwatch.models import (
    HISTORY_SIZE,
    STATE_AFTER_COMMAND,
    STATS_STATES,
    CommandKind,
    CommandOutcome,
    ContainerDetail,
    ContainerRecord,
    ContainerStats,
    ContainerSummary,
    FilterBy,
    HealthStatus,
    Notice,
    NoticeLevel,
    RegistrySnapshot,
    SortColumn,
    SortOrder,
    SortSpec,
)

NOTICE_LIMIT = 50


@dataclass
class UpsertResult:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    left_polling: list[str] = field(default_factory=list)


def _sort_key(column: SortColumn) -> Callable[[ContainerRecord], Any]:
    if column == SortColumn.name:
        return lambda record: record.name
    if column == SortColumn.state:
        return lambda record: record.state_order
    if column == SortColumn.status:
        return lambda record: record.status
    if column == SortColumn.cpu:
        return lambda record: (record.cpu_percent is not None, record.cpu_percent or 0.0)
    if column == SortColumn.memory:
        return lambda record: (record.memory_usage is not None, record.memory_usage or 0)
    if column == SortColumn.id:
        return lambda record: record.id
    if column == SortColumn.image:
        return lambda record: record.image
    if column == SortColumn.rx:
        return lambda record: record.rx_bytes
    return lambda record: record.tx_bytes


def _matches_filter(record: ContainerRecord, term: str, by: FilterBy) -> bool:
    needle = term.lower()
    if by == FilterBy.name:
        return needle in record.name.lower()
    if by == FilterBy.image:
        return needle in record.image.lower()
    if by == FilterBy.status:
        return needle in record.status.lower()
    return (
        needle in record.name.lower()
        or needle in record.image.lower()
        or needle in record.status.lower()
    )


def _push(history: tuple, value: Any) -> tuple:
    return (*history, value)[-HISTORY_SIZE:]


class ContainerRegistry:
    """Canonical mapping of container id to its latest known record.

    Records are immutable; every write swaps a whole record under the lock so
    readers only ever see complete values.
    """

    def __init__(self, on_change: Callable[[], None] | None = None) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, ContainerRecord] = {}
        self._sort: SortSpec | None = None
        self._filter_term: str | None = None
        self._filter_by = FilterBy.name
        self._notices: deque[Notice] = deque(maxlen=NOTICE_LIMIT)
        self._on_change = on_change

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def upsert(self, summaries: Iterable[ContainerSummary]) -> UpsertResult:
        result = UpsertResult()
        incoming = {summary.id: summary for summary in summaries}
        with self._lock:
            for container_id in list(self._records):
                if container_id not in incoming:
                    del self._records[container_id]
                    result.removed.append(container_id)

            for container_id, summary in incoming.items():
                existing = self._records.get(container_id)
                updates = {
                    "name": summary.name,
                    "image": summary.image,
                    "state": summary.state,
                    "status": summary.status,
                    "created": summary.created,
                    "ports": summary.ports,
                    "health": HealthStatus.from_status_text(summary.status),
                }
                if summary.command:
                    updates["command"] = summary.command
                if existing is None:
                    self._records[container_id] = ContainerRecord(id=container_id, **updates)
                    result.added.append(container_id)
                    continue
                if existing.state in STATS_STATES and summary.state not in STATS_STATES:
                    result.left_polling.append(container_id)
                self._records[container_id] = existing.model_copy(update=updates)
        self._changed()
        return result

    def update_stats(self, container_id: str, stats: ContainerStats) -> bool:
        with self._lock:
            record = self._records.get(container_id)
            # a fetch that finishes after the container stopped must not look fresh
            if record is None or record.state not in STATS_STATES:
                return False
            updates: dict[str, Any] = {
                "memory_limit": stats.memory_limit,
                "rx_bytes": stats.rx_bytes,
                "tx_bytes": stats.tx_bytes,
                "stats_stale": False,
            }
            if stats.cpu_percent is not None:
                updates["cpu_percent"] = stats.cpu_percent
                updates["cpu_history"] = _push(record.cpu_history, stats.cpu_percent)
            if stats.memory_usage is not None:
                updates["memory_usage"] = stats.memory_usage
                updates["memory_history"] = _push(record.memory_history, stats.memory_usage)
            self._records[container_id] = record.model_copy(update=updates)
        self._changed()
        return True

    def mark_stats_stale(self, container_id: str) -> None:
        with self._lock:
            record = self._records.get(container_id)
            if record is None or record.stats_stale:
                return
            self._records[container_id] = record.model_copy(update={"stats_stale": True})
        self._changed()

    def apply_detail(self, container_id: str, detail: ContainerDetail) -> None:
        with self._lock:
            record = self._records.get(container_id)
            if record is None:
                return
            updates: dict[str, Any] = {
                "restart_count": detail.restart_count,
                "started_at": detail.started_at,
            }
            if detail.command and not record.command:
                updates["command"] = detail.command
            if detail.health != HealthStatus.none:
                updates["health"] = detail.health
            self._records[container_id] = record.model_copy(update=updates)
        self._changed()

    def mark_self(self, container_ids: Iterable[str]) -> None:
        with self._lock:
            for container_id in container_ids:
                record = self._records.get(container_id)
                if record is not None and not record.is_self:
                    self._records[container_id] = record.model_copy(update={"is_self": True})

    def apply_command_result(self, container_id: str, kind: CommandKind, outcome: CommandOutcome, token: str | None = None) -> None:
        with self._lock:
            record = self._records.get(container_id)
            name = record.name if record else container_id[:12]
            if record is not None:
                if outcome.ok:
                    updates: dict[str, Any] = {"last_error": None}
                    target = STATE_AFTER_COMMAND.get(kind)
                    if target is not None:
                        updates["state"] = target
                        if target not in STATS_STATES:
                            updates["stats_stale"] = True
                    self._records[container_id] = record.model_copy(update=updates)
                else:
                    self._records[container_id] = record.model_copy(update={"last_error": outcome.error})
            if outcome.ok:
                notice = Notice(message=f"{kind.value} {name}: done", container_id=container_id, token=token)
            else:
                notice = Notice(
                    level=NoticeLevel.error,
                    message=f"unable to {kind.value} {name}: {outcome.error}",
                    container_id=container_id,
                    token=token,
                )
            self._notices.append(notice)
        self._changed()

    def add_notice(
        self,
        message: str,
        level: NoticeLevel = NoticeLevel.info,
        container_id: str | None = None,
        token: str | None = None,
    ) -> Notice:
        notice = Notice(level=level, message=message, container_id=container_id, token=token)
        with self._lock:
            self._notices.append(notice)
        self._changed()
        return notice

    def clear_notices(self) -> None:
        with self._lock:
            self._notices.clear()
        self._changed()

    def get(self, container_id: str) -> ContainerRecord | None:
        with self._lock:
            return self._records.get(container_id)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._records)

    def records(self) -> list[ContainerRecord]:
        with self._lock:
            return list(self._records.values())

    def set_sort(self, column: SortColumn) -> SortSpec | None:
        with self._lock:
            current = self._sort
            if current is None or current.column != column:
                self._sort = SortSpec(column=column, order=SortOrder.asc)
            elif current.order == SortOrder.asc:
                self._sort = SortSpec(column=column, order=SortOrder.desc)
            else:
                self._sort = None
            sort = self._sort
        self._changed()
        return sort

    def reset_sort(self) -> None:
        with self._lock:
            self._sort = None
        self._changed()

    def set_filter(self, term: str | None, by: FilterBy | None = None) -> None:
        with self._lock:
            self._filter_term = term or None
            if by is not None:
                self._filter_by = by
        self._changed()

    def cycle_filter_by(self, forward: bool = True) -> FilterBy:
        with self._lock:
            candidate = self._filter_by.next() if forward else self._filter_by.prev()
            if candidate is not None:
                self._filter_by = candidate
            by = self._filter_by
        self._changed()
        return by

    def get_snapshot(self) -> RegistrySnapshot:
        with self._lock:
            records = list(self._records.values())
            sort = self._sort
            term = self._filter_term
            by = self._filter_by
            notices = tuple(self._notices)

        # sorted() is stable, so equal keys keep their creation order
        ordered = sorted(records, key=lambda record: record.created)
        if sort is not None:
            ordered = sorted(ordered, key=_sort_key(sort.column), reverse=sort.order == SortOrder.desc)
        if term:
            ordered = [record for record in ordered if _matches_filter(record, term, by)]

        return RegistrySnapshot(
            containers=tuple(ordered),
            sort=sort,
            filter_term=term,
            filter_by=by,
            total=len(records),
            notices=notices,
        )
