from __future__ import annotations

from collections.abc import AsyncIterator
import logging
import struct
from typing import Any

import httpx

from dockwatch.config import DEFAULT_SOCKET
from dockwatch.errors import RuntimeApiError, RuntimeUnavailableError
from dockwatch.exec_session import ExecSession
from dockwatch.models import (
    CommandKind,
    CommandOutcome,
    ContainerDetail,
    ContainerState,
    ContainerStats,
    ContainerSummary,
    HealthStatus,
    PortMapping,
)

UDS_BASE_URL = "http://docker"
MULTIPLEXED_HEADER = struct.Struct(">BxxxL")

# method, path template, query
_LIFECYCLE_REQUESTS: dict[CommandKind, tuple[str, str, dict[str, str]]] = {
    CommandKind.start: ("POST", "/containers/{id}/start", {}),
    CommandKind.stop: ("POST", "/containers/{id}/stop", {}),
    CommandKind.restart: ("POST", "/containers/{id}/restart", {}),
    CommandKind.pause: ("POST", "/containers/{id}/pause", {}),
    CommandKind.unpause: ("POST", "/containers/{id}/unpause", {}),
    CommandKind.delete: ("DELETE", "/containers/{id}", {"force": "1", "v": "0"}),
}


def resolve_docker_host(host: str | None) -> tuple[str, str | None]:
    """Return (base_url, unix_socket_path) for a DOCKER_HOST style value."""
    if not host:
        return UDS_BASE_URL, DEFAULT_SOCKET
    if host.startswith("unix://"):
        return UDS_BASE_URL, host[len("unix://"):]
    if host.startswith("/"):
        return UDS_BASE_URL, host
    if host.startswith("tcp://"):
        return f"http://{host[len('tcp://'):]}".rstrip("/"), None
    if host.startswith(("http://", "https://")):
        return host.rstrip("/"), None
    return f"http://{host}".rstrip("/"), None


def calculate_cpu_percent(payload: dict[str, Any]) -> float:
    cpu_stats = payload.get("cpu_stats") or {}
    precpu_stats = payload.get("precpu_stats") or {}
    cpu_usage = cpu_stats.get("cpu_usage") or {}
    precpu_usage = precpu_stats.get("cpu_usage") or {}

    cpu_delta = max(0, int(cpu_usage.get("total_usage") or 0) - int(precpu_usage.get("total_usage") or 0))

    system_now = cpu_stats.get("system_cpu_usage")
    system_before = precpu_stats.get("system_cpu_usage")
    if system_now is None or system_before is None:
        return 0.0
    system_delta = max(0, int(system_now) - int(system_before))

    online_cpus = cpu_stats.get("online_cpus") or len(cpu_usage.get("percpu_usage") or [])
    if system_delta > 0 and cpu_delta > 0:
        return (cpu_delta / system_delta) * int(online_cpus) * 100.0
    return 0.0


def calculate_memory_usage(payload: dict[str, Any]) -> int:
    memory_stats = payload.get("memory_stats") or {}
    usage = int(memory_stats.get("usage") or 0)
    detail = memory_stats.get("stats") or {}
    # cgroup v2 reports inactive_file, v1 reports total_inactive_file
    cache = detail.get("inactive_file")
    if cache is None:
        cache = detail.get("total_inactive_file", 0)
    return max(0, usage - int(cache or 0))


def parse_stats(payload: dict[str, Any], alive: bool = True) -> ContainerStats:
    networks = payload.get("networks") or {}
    rx_bytes = sum(int((item or {}).get("rx_bytes") or 0) for item in networks.values())
    tx_bytes = sum(int((item or {}).get("tx_bytes") or 0) for item in networks.values())
    memory_limit = int((payload.get("memory_stats") or {}).get("limit") or 0)

    if not alive:
        return ContainerStats(memory_limit=memory_limit, rx_bytes=rx_bytes, tx_bytes=tx_bytes)

    return ContainerStats(
        cpu_percent=calculate_cpu_percent(payload),
        memory_usage=calculate_memory_usage(payload),
        memory_limit=memory_limit,
        rx_bytes=rx_bytes,
        tx_bytes=tx_bytes,
    )


def parse_summary(raw: dict[str, Any]) -> ContainerSummary | None:
    container_id = str(raw.get("Id") or "").strip()
    if not container_id:
        return None

    names = raw.get("Names") or []
    name = str(names[0]) if names else ""
    if name.startswith("/"):
        name = name[1:]

    ports: list[PortMapping] = []
    for item in raw.get("Ports") or []:
        if not isinstance(item, dict) or item.get("PrivatePort") is None:
            continue
        ports.append(
            PortMapping(
                private=int(item["PrivatePort"]),
                public=int(item["PublicPort"]) if item.get("PublicPort") is not None else None,
                ip=item.get("IP") or None,
                protocol=str(item.get("Type") or "tcp"),
            )
        )

    return ContainerSummary(
        id=container_id,
        name=name,
        image=str(raw.get("Image") or ""),
        state=ContainerState.parse(raw.get("State")),
        status=str(raw.get("Status") or ""),
        created=int(raw.get("Created") or 0),
        command=str(raw.get("Command") or ""),
        ports=tuple(ports),
    )


def parse_detail(raw: dict[str, Any]) -> ContainerDetail:
    state = raw.get("State") or {}
    health = state.get("Health") or {}
    path = str(raw.get("Path") or "")
    args = [str(item) for item in raw.get("Args") or []]
    return ContainerDetail(
        id=str(raw.get("Id") or ""),
        state=ContainerState.parse(state.get("Status")),
        health=HealthStatus.parse(health.get("Status")),
        restart_count=int(raw.get("RestartCount") or 0),
        started_at=str(state.get("StartedAt") or ""),
        command=" ".join([path, *args]).strip(),
    )


class LogStreamDecoder:
    """Turns docker log body chunks into complete text lines.

    Non-tty containers send a multiplexed stream where every frame carries an
    8 byte header (stream type, 3 padding bytes, big endian payload size).
    """

    def __init__(self, multiplexed: bool | None = None) -> None:
        self._multiplexed = multiplexed
        self._frames = bytearray()
        self._pending = bytearray()

    def feed(self, chunk: bytes) -> list[str]:
        if self._multiplexed is None:
            self._frames.extend(chunk)
            if len(self._frames) < MULTIPLEXED_HEADER.size:
                return []
            head = bytes(self._frames[:4])
            self._multiplexed = head[0] in (0, 1, 2) and head[1:4] == b"\x00\x00\x00"
            chunk = bytes(self._frames)
            self._frames.clear()

        if not self._multiplexed:
            self._pending.extend(chunk)
            return self._drain_lines()

        self._frames.extend(chunk)
        while len(self._frames) >= MULTIPLEXED_HEADER.size:
            _, size = MULTIPLEXED_HEADER.unpack_from(self._frames)
            end = MULTIPLEXED_HEADER.size + size
            if len(self._frames) < end:
                break
            self._pending.extend(self._frames[MULTIPLEXED_HEADER.size:end])
            del self._frames[:end]
        return self._drain_lines()

    def flush(self) -> list[str]:
        if self._multiplexed is None and self._frames:
            self._pending.extend(self._frames)
            self._frames.clear()
        if not self._pending:
            return []
        line = self._pending.decode("utf-8", errors="replace").rstrip("\r")
        self._pending.clear()
        return [line] if line.strip() else []

    def _drain_lines(self) -> list[str]:
        lines: list[str] = []
        while True:
            index = self._pending.find(b"\n")
            if index < 0:
                break
            line = self._pending[:index].decode("utf-8", errors="replace").rstrip("\r")
            del self._pending[: index + 1]
            if line.strip():
                lines.append(line)
        return lines


def _multiplexed_from_content_type(content_type: str) -> bool | None:
    lowered = content_type.lower()
    if "multiplexed-stream" in lowered:
        return True
    if "raw-stream" in lowered:
        return False
    return None


class DockerClient:
    def __init__(
        self,
        host: str | None,
        timeout: float,
        logger: logging.Logger,
        exec_shell: str = "sh",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._host = host
        self._logger = logger
        self._exec_shell = exec_shell
        self._base_url, socket_path = resolve_docker_host(host)

        if transport is None and socket_path:
            transport = httpx.AsyncHTTPTransport(uds=socket_path)
        self._socket_path = socket_path
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=timeout, transport=transport)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        await self._client.aclose()

    def _format_error(self, exc: Exception) -> str:
        if isinstance(exc, httpx.HTTPStatusError):
            response = exc.response
            request = exc.request
            detail = (response.text or "").strip().replace("\n", " ")
            if len(detail) > 220:
                detail = f"{detail[:220]}..."
            return (
                f"status={response.status_code} method={request.method} "
                f"url={request.url} detail={detail}"
            )
        if isinstance(exc, httpx.RequestError):
            request = exc.request
            return (
                f"{exc.__class__.__name__} method={request.method} "
                f"url={request.url} detail={exc}"
            )
        return str(exc)

    def _api_error(self, method: str, url: str, exc: Exception) -> RuntimeApiError:
        status_code = None
        detail = ""
        if isinstance(exc, httpx.HTTPStatusError):
            status_code = exc.response.status_code
            try:
                detail = str(exc.response.json().get("message") or "")
            except ValueError:
                detail = (exc.response.text or "").strip()
        return RuntimeApiError(
            f"runtime_request_failed: {self._format_error(exc)}",
            status_code=status_code,
            method=method,
            url=url,
            detail=detail or str(exc),
        )

    async def _request(
        self,
        method: str,
        url: str,
        params: dict[str, str] | None = None,
        expected: set[int] | None = None,
    ) -> httpx.Response:
        if expected is None:
            expected = {200, 201, 204}
        try:
            response = await self._client.request(method, url, params=params)
            if response.status_code in expected:
                return response
            response.raise_for_status()
            raise httpx.HTTPStatusError(
                f"unexpected status {response.status_code}",
                request=response.request,
                response=response,
            )
        except httpx.HTTPError as exc:
            raise self._api_error(method, url, exc) from exc

    async def ping(self) -> None:
        try:
            await self._request("GET", "/_ping", expected={200})
        except RuntimeApiError as exc:
            raise RuntimeUnavailableError(
                f"unable to access docker daemon at {self._host or self._socket_path}: {exc.detail}",
                status_code=exc.status_code,
                method=exc.method,
                url=exc.url,
                detail=exc.detail,
            ) from exc

    async def list_containers(self) -> list[ContainerSummary]:
        response = await self._request("GET", "/containers/json", params={"all": "1"}, expected={200})
        items: list[ContainerSummary] = []
        for raw in response.json() or []:
            if not isinstance(raw, dict):
                continue
            summary = parse_summary(raw)
            if summary is not None:
                items.append(summary)
        return items

    async def inspect(self, container_id: str) -> ContainerDetail:
        response = await self._request("GET", f"/containers/{container_id}/json", expected={200})
        return parse_detail(response.json())

    async def stats(self, container_id: str, alive: bool = True) -> ContainerStats:
        response = await self._request(
            "GET",
            f"/containers/{container_id}/stats",
            params={"stream": "false", "one-shot": "false"},
            expected={200},
        )
        return parse_stats(response.json(), alive=alive)

    async def logs(self, container_id: str, since: int = 0, stderr: bool = True) -> AsyncIterator[str]:
        url = f"/containers/{container_id}/logs"
        params = {
            "stdout": "1",
            "stderr": "1" if stderr else "0",
            "timestamps": "1",
            "since": str(max(0, since)),
        }
        try:
            async with self._client.stream("GET", url, params=params) as response:
                if response.status_code != 200:
                    await response.aread()
                    response.raise_for_status()
                decoder = LogStreamDecoder(
                    _multiplexed_from_content_type(response.headers.get("content-type", ""))
                )
                async for chunk in response.aiter_bytes():
                    for line in decoder.feed(chunk):
                        yield line
                for line in decoder.flush():
                    yield line
        except httpx.HTTPError as exc:
            raise self._api_error("GET", url, exc) from exc

    async def lifecycle(self, container_id: str, kind: CommandKind) -> CommandOutcome:
        request = _LIFECYCLE_REQUESTS.get(kind)
        if request is None:
            return CommandOutcome.failure(f"unsupported_lifecycle_command: {kind.value}")
        method, template, params = request
        try:
            # 304 means the runtime already reached the requested state.
            await self._request(method, template.format(id=container_id), params=params or None, expected={200, 204, 304})
        except RuntimeApiError as exc:
            self._logger.warning(
                "lifecycle_command_failed",
                extra={"container_id": container_id, "command": kind.value, "error": str(exc)},
            )
            return CommandOutcome.failure(exc.detail or str(exc))
        return CommandOutcome.success()

    async def exec(self, container_id: str) -> ExecSession:
        return await ExecSession.spawn(
            container_id,
            shell=self._exec_shell,
            docker_host=self._host,
            logger=self._logger,
        )
