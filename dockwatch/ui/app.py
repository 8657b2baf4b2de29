from __future__ import annotations

from datetime import datetime
import sys
import threading
from typing import TextIO

from dockwatch.controller import DashboardController
from dockwatch.models import ContainerRecord, RegistrySnapshot
from dockwatch.state import DashboardState

COLUMNS = (
    ("NAME", 24),
    ("STATE", 10),
    ("STATUS", 24),
    ("CPU", 8),
    ("MEMORY", 20),
    ("ID", 8),
    ("IMAGE", 24),
    ("↓ RX", 10),
    ("↑ TX", 10),
)
NOTICE_LINES = 5


def format_bytes(value: int | None) -> str:
    if value is None:
        return "-"
    size = float(value)
    for unit in ("B", "kB", "MB", "GB"):
        if size < 1000 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.2f} {unit}"
        size /= 1000
    return f"{size:.2f} GB"


def _fit(text: str, width: int) -> str:
    if len(text) > width:
        return f"{text[: width - 1]}…"
    return text.ljust(width)


def format_row(record: ContainerRecord) -> str:
    marker = "?" if record.stats_stale and record.is_alive else ""
    cpu = "-" if record.cpu_percent is None else f"{record.cpu_percent:05.2f}%{marker}"
    memory = f"{format_bytes(record.memory_usage)} / {format_bytes(record.memory_limit)}"
    values = (
        record.name,
        record.display_state,
        record.status,
        cpu,
        memory,
        record.short_id,
        record.image,
        format_bytes(record.rx_bytes),
        format_bytes(record.tx_bytes),
    )
    return " ".join(_fit(value, width) for value, (_, width) in zip(values, COLUMNS)).rstrip()


def render_snapshot(snapshot: RegistrySnapshot, state: DashboardState) -> list[str]:
    connection = "connected" if state.connected else "disconnected"
    header = f"dockwatch | {state.docker_host} | {connection} | {len(snapshot.containers)}/{snapshot.total} containers"
    if snapshot.sort is not None:
        header += f" | sort={snapshot.sort.column.value} {snapshot.sort.order.value}"
    if snapshot.filter_term:
        header += f" | filter[{snapshot.filter_by.value}]={snapshot.filter_term}"

    lines = [header, " ".join(_fit(title, width) for title, width in COLUMNS).rstrip()]
    if not snapshot.containers:
        lines.append("no containers")
    lines.extend(format_row(record) for record in snapshot.containers)

    if state.last_error and not state.connected:
        lines.append(f"error: {state.last_error}")
    for notice in snapshot.notices[-NOTICE_LINES:]:
        lines.append(f"[{notice.created_at:%H:%M:%S}] {notice.level.value}: {notice.message}")
    return lines


class HeadlessApp:
    """Plain-text renderer that redraws only when the model changed."""

    def __init__(
        self,
        controller: DashboardController,
        frame_interval_sec: float,
        stream: TextIO | None = None,
    ) -> None:
        self._controller = controller
        self._frame_interval_sec = frame_interval_sec
        self._stream = stream or sys.stdout
        self._stop = threading.Event()
        self.frames = 0

    def stop(self) -> None:
        self._stop.set()

    def run(self, max_frames: int | None = None) -> None:
        state = self._controller.state
        while not self._stop.is_set():
            self._drain_events()
            # the exec shell owns the terminal until it exits
            if not state.exec_container_id and state.redraw.take():
                self.draw()
                if max_frames is not None and self.frames >= max_frames:
                    return
            if not self._controller.is_running():
                return
            self._stop.wait(self._frame_interval_sec)

    def draw(self) -> None:
        lines = render_snapshot(self._controller.snapshot(), self._controller.state)
        self._stream.write(f"--- {datetime.now():%H:%M:%S} ---\n")
        self._stream.write("\n".join(lines))
        self._stream.write("\n")
        self._stream.flush()
        self.frames += 1

    def _drain_events(self) -> None:
        for event in self._controller.bus.drain_events():
            if event.get("type") in {"exec_started", "exec_finished"}:
                self._controller.state.redraw.mark()


def run_ui(controller: DashboardController, frame_interval_sec: float) -> None:
    app = HeadlessApp(controller, frame_interval_sec)
    try:
        app.run()
    except KeyboardInterrupt:
        app.stop()
