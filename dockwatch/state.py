from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import threading


class RedrawFlag:
    """Dirty flag shared between the data side and the render loop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def mark(self) -> None:
        self._event.set()

    def take(self) -> bool:
        if not self._event.is_set():
            return False
        self._event.clear()
        return True

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


@dataclass
class DashboardState:
    connected: bool = False
    docker_host: str = ""
    engine_status: str = "starting"

    last_error: str = ""
    last_event: str = ""
    last_updated: datetime | None = None
    last_poll_at: datetime | None = None

    ticks: int = 0
    skipped_ticks: int = 0
    exec_container_id: str = ""

    redraw: RedrawFlag = field(default_factory=RedrawFlag)

    def touch(self) -> None:
        self.last_updated = datetime.now()
        self.redraw.mark()
