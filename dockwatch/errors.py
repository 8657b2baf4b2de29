from __future__ import annotations

from dockwatch.models import Command, CommandStatus, RejectionReason


class DockwatchError(Exception):
    pass


class ConfigError(DockwatchError):
    pass


class RuntimeApiError(DockwatchError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        method: str = "",
        url: str = "",
        detail: str = "",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.method = method
        self.url = url
        self.detail = detail

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class RuntimeUnavailableError(RuntimeApiError):
    pass


class CommandRejected(DockwatchError):
    def __init__(
        self,
        reason: RejectionReason,
        command: Command,
        *,
        existing_token: str | None = None,
        existing_status: CommandStatus | None = None,
    ) -> None:
        super().__init__(f"{command.kind.value}_rejected: {reason.value} container={command.container_id[:12]}")
        self.reason = reason
        self.command = command
        self.existing_token = existing_token
        self.existing_status = existing_status
