from __future__ import annotations

import asyncio
import logging
import os
import shutil

from dockwatch.errors import RuntimeApiError

DOCKER_CLI = "docker"


class ExecSession:
    """Interactive shell inside a container, attached to the caller's terminal."""

    def __init__(self, container_id: str, process: asyncio.subprocess.Process, logger: logging.Logger) -> None:
        self.container_id = container_id
        self._process = process
        self._logger = logger

    @classmethod
    async def spawn(
        cls,
        container_id: str,
        *,
        shell: str,
        docker_host: str | None,
        logger: logging.Logger,
    ) -> ExecSession:
        cli = shutil.which(DOCKER_CLI)
        if cli is None:
            raise RuntimeApiError("exec_unavailable: docker cli not found on PATH")

        env = dict(os.environ)
        if docker_host:
            env["DOCKER_HOST"] = docker_host

        logger.info("exec_session_start", extra={"container_id": container_id, "shell": shell})
        # stdio is inherited so the shell owns the terminal until it exits.
        process = await asyncio.create_subprocess_exec(cli, "exec", "-it", container_id, shell, env=env)
        return cls(container_id, process, logger)

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def wait(self) -> int:
        returncode = await self._process.wait()
        self._logger.info(
            "exec_session_exit",
            extra={"container_id": self.container_id, "returncode": returncode},
        )
        return returncode

    async def terminate(self, timeout: float = 2.0) -> None:
        if self._process.returncode is not None:
            return
        self._process.terminate()
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            self._process.kill()
            await self._process.wait()
