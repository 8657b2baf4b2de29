from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from operator import attrgetter
import re
import threading

from rich.text import Text

from dockwatch.models import LogLine, LogMode, LogView, ScrollState, StyledSpan, dedup_key

ANSI_ESCAPE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI, includes SGR
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC
    r"|\x1b[@-Z\\-_]"
)


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def parse_ansi(text: str) -> tuple[StyledSpan, ...]:
    styled = Text.from_ansi(text)
    plain = styled.plain
    spans: list[StyledSpan] = []
    position = 0
    for span in sorted(styled.spans, key=attrgetter("start")):
        if span.start > position:
            spans.append(StyledSpan(text=plain[position:span.start]))
        if span.end > span.start:
            spans.append(StyledSpan(text=plain[span.start:span.end], style=str(span.style)))
        position = max(position, span.end)
    if position < len(plain):
        spans.append(StyledSpan(text=plain[position:]))
    return tuple(spans)


def split_timestamp(raw: str) -> tuple[str, str]:
    timestamp, _, content = raw.partition(" ")
    return timestamp, content


def timestamp_to_epoch(timestamp: str) -> int | None:
    try:
        parsed = datetime.strptime(timestamp[:19], "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        return None
    return int(parsed.replace(tzinfo=timezone.utc).timestamp())


def clamp(value: int, upper: int) -> int:
    """Clamp into [0, upper], treating a negative upper bound as 0."""
    return max(0, min(value, max(0, upper)))


@dataclass
class LogBuffer:
    lines: list[LogLine] = field(default_factory=list)
    seen: set[tuple[str, str]] = field(default_factory=set)
    search_term: str | None = None
    case_sensitive: bool = False
    search_matches: list[int] = field(default_factory=list)
    offset_x: int = 0
    offset_y: int = 0
    selected: int | None = None
    follow: bool = True
    viewport_height: int = 0
    max_width: int = 0
    last_epoch: int = 0
    opened: bool = False
    dismissed: bool = False

    def matches(self, line: LogLine) -> bool:
        if not self.search_term:
            return False
        if self.case_sensitive:
            return self.search_term in line.text
        return self.search_term.lower() in line.text.lower()

    def bottom(self) -> int:
        return max(0, len(self.lines) - self.viewport_height)


def search_lines(lines: Iterable[LogLine], term: str | None, case_sensitive: bool) -> list[int]:
    if not term:
        return []
    needle = term if case_sensitive else term.lower()
    results: list[int] = []
    for index, line in enumerate(lines):
        haystack = line.text if case_sensitive else line.text.lower()
        if needle in haystack:
            results.append(index)
    return results


class LogStore:
    """Per-container deduplicated log buffers.

    Buffers are created lazily and survive their container's removal from the
    registry until the user dismisses them.
    """

    def __init__(
        self,
        mode: LogMode = LogMode.plain,
        show_timestamp: bool = True,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._buffers: dict[str, LogBuffer] = {}
        self._mode = mode
        self._show_timestamp = show_timestamp
        self._on_change = on_change

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _buffer(self, container_id: str) -> LogBuffer:
        buffer = self._buffers.get(container_id)
        if buffer is None:
            buffer = LogBuffer()
            self._buffers[container_id] = buffer
        return buffer

    def _build_line(self, sequence: int, raw: str) -> LogLine:
        timestamp, content = split_timestamp(raw)
        display = raw if self._show_timestamp else content
        spans: tuple[StyledSpan, ...] = ()
        if self._mode == LogMode.raw:
            text = display
        elif self._mode == LogMode.color:
            spans = parse_ansi(display)
            text = "".join(span.text for span in spans)
        else:
            text = strip_ansi(display)
        return LogLine(sequence=sequence, timestamp=timestamp, text=text, raw=raw, spans=spans)

    def open(self, container_id: str) -> None:
        with self._lock:
            buffer = self._buffer(container_id)
            buffer.opened = True
            buffer.dismissed = False
        self._changed()

    def ingest(self, container_id: str, batch: Iterable[str]) -> int:
        inserted = 0
        with self._lock:
            buffer = self._buffer(container_id)
            for raw in batch:
                if not raw.strip():
                    continue
                timestamp, _ = split_timestamp(raw)
                key = dedup_key(timestamp, raw)
                if key in buffer.seen:
                    continue
                buffer.seen.add(key)
                line = self._build_line(len(buffer.lines), raw)
                buffer.lines.append(line)
                buffer.max_width = max(buffer.max_width, line.width)
                epoch = timestamp_to_epoch(timestamp)
                if epoch is not None:
                    buffer.last_epoch = max(buffer.last_epoch, epoch)
                if buffer.matches(line):
                    buffer.search_matches.append(line.sequence)
                inserted += 1
            if inserted and buffer.follow:
                buffer.offset_y = buffer.bottom()
                buffer.selected = len(buffer.lines) - 1
        if inserted:
            self._changed()
        return inserted

    def since(self, container_id: str) -> int:
        with self._lock:
            buffer = self._buffers.get(container_id)
            return buffer.last_epoch if buffer else 0

    def has_buffer(self, container_id: str) -> bool:
        with self._lock:
            return container_id in self._buffers

    def line_count(self, container_id: str) -> int:
        with self._lock:
            buffer = self._buffers.get(container_id)
            return len(buffer.lines) if buffer else 0

    def search(self, container_id: str, term: str | None, case_sensitive: bool = False) -> list[int]:
        with self._lock:
            buffer = self._buffers.get(container_id)
            lines = list(buffer.lines) if buffer else []
        return search_lines(lines, term, case_sensitive)

    def set_search(self, container_id: str, term: str | None, case_sensitive: bool = False) -> list[int]:
        cleaned = term or None
        with self._lock:
            buffer = self._buffer(container_id)
            if cleaned != buffer.search_term or case_sensitive != buffer.case_sensitive:
                buffer.search_term = cleaned
                buffer.case_sensitive = case_sensitive
                buffer.search_matches = search_lines(buffer.lines, cleaned, case_sensitive)
                if buffer.search_matches:
                    buffer.selected = buffer.search_matches[-1]
                    buffer.follow = False
                    buffer.offset_x = 0
            matches = list(buffer.search_matches)
        self._changed()
        return matches

    def clear_search(self, container_id: str) -> None:
        with self._lock:
            buffer = self._buffers.get(container_id)
            if buffer is None:
                return
            buffer.search_term = None
            buffer.search_matches = []
        self._changed()

    def search_step(self, container_id: str, forward: bool = True) -> int | None:
        with self._lock:
            buffer = self._buffers.get(container_id)
            if buffer is None or not buffer.search_matches:
                return None
            current = buffer.selected if buffer.selected is not None else -1
            if forward:
                candidates = [index for index in buffer.search_matches if index > current]
                target = candidates[0] if candidates else None
            else:
                candidates = [index for index in buffer.search_matches if index < current]
                target = candidates[-1] if candidates else None
            if target is None:
                return None
            buffer.selected = target
            buffer.follow = False
        self._changed()
        return target

    def scroll_vertical(self, container_id: str, position: int, viewport_height: int) -> int:
        with self._lock:
            buffer = self._buffer(container_id)
            buffer.viewport_height = max(0, viewport_height)
            buffer.offset_y = clamp(position, len(buffer.lines) - buffer.viewport_height)
            buffer.follow = buffer.offset_y >= buffer.bottom()
            offset = buffer.offset_y
        self._changed()
        return offset

    def scroll_horizontal(self, container_id: str, position: int, viewport_width: int) -> int:
        with self._lock:
            buffer = self._buffer(container_id)
            buffer.offset_x = clamp(position, buffer.max_width - max(0, viewport_width))
            offset = buffer.offset_x
        self._changed()
        return offset

    def scroll_to_start(self, container_id: str) -> None:
        with self._lock:
            buffer = self._buffer(container_id)
            buffer.offset_y = 0
            buffer.selected = 0 if buffer.lines else None
            buffer.follow = False
        self._changed()

    def scroll_to_end(self, container_id: str) -> None:
        with self._lock:
            buffer = self._buffer(container_id)
            buffer.offset_y = buffer.bottom()
            buffer.selected = len(buffer.lines) - 1 if buffer.lines else None
            buffer.follow = True
        self._changed()

    def view(self, container_id: str) -> LogView:
        with self._lock:
            buffer = self._buffers.get(container_id)
            if buffer is None:
                return LogView(container_id=container_id)
            matches = tuple(buffer.search_matches)
            position = None
            if matches:
                position = str(len(matches))
                if buffer.selected in matches:
                    total = str(len(matches))
                    position = f"{matches.index(buffer.selected) + 1:>{len(total)}}/{total}"
            return LogView(
                container_id=container_id,
                lines=tuple(buffer.lines),
                search_term=buffer.search_term,
                case_sensitive=buffer.case_sensitive,
                search_matches=matches,
                search_position=position,
                scroll=ScrollState(
                    offset_x=buffer.offset_x,
                    offset_y=buffer.offset_y,
                    selected=buffer.selected,
                    follow=buffer.follow,
                ),
            )

    def dismiss(self, container_id: str, live: bool) -> None:
        """Drop the buffer if its container is gone, otherwise remember the dismissal."""
        with self._lock:
            buffer = self._buffers.get(container_id)
            if buffer is None:
                return
            if live:
                buffer.dismissed = True
            else:
                del self._buffers[container_id]
        self._changed()

    def prune(self, live_ids: Iterable[str]) -> list[str]:
        live = set(live_ids)
        with self._lock:
            dropped = [
                container_id
                for container_id, buffer in self._buffers.items()
                if container_id not in live and (buffer.dismissed or not buffer.opened)
            ]
            for container_id in dropped:
                del self._buffers[container_id]
        return dropped
