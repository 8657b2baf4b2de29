from __future__ import annotations

import sys

from pydantic import ValidationError

from dockwatch.config import DEFAULT_SOCKET, get_settings
from dockwatch.controller import DashboardController
from dockwatch.errors import ConfigError, DockwatchError
from dockwatch.logger import setup_logging
from dockwatch.state import DashboardState
from dockwatch.ui.app import run_ui


def _load_settings():
    try:
        return get_settings()
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {exc}") from exc


def main() -> int:
    try:
        settings = _load_settings()
    except ConfigError as exc:
        print(exc, file=sys.stderr)
        return 1

    logger = setup_logging(settings.log_dir, settings.log_level, settings.log_console)
    state = DashboardState(docker_host=settings.docker_host or DEFAULT_SOCKET)
    controller = DashboardController(settings, state, logger)

    try:
        controller.start()
    except DockwatchError as exc:
        logger.error("startup_failed", extra={"error": str(exc)})
        print(exc, file=sys.stderr)
        return 1

    try:
        run_ui(controller, settings.frame_interval_sec)
    finally:
        controller.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
