"""Managed `opencode serve` subprocess."""

import asyncio
import shutil
import time

import httpx
from loguru import logger

from opencode_claw.runtime.base import AgentRuntimeError


class OpencodeServer:
    """Spawn an OpenCode server and wait until its HTTP API answers."""

    def __init__(
        self,
        hostname: str = "127.0.0.1",
        port: int = 4096,
        directory: str | None = None,
        startup_timeout_s: float = 30.0,
        binary: str = "opencode",
    ):
        self.hostname = hostname
        self.port = port
        self.directory = directory
        self.startup_timeout_s = startup_timeout_s
        self.binary = binary
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def base_url(self) -> str:
        return f"http://{self.hostname}:{self.port}"

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> str:
        """Start the server and return its base URL once it is ready."""
        if self.is_running:
            return self.base_url

        executable = shutil.which(self.binary)
        if not executable:
            raise AgentRuntimeError(f"'{self.binary}' not found on PATH")

        logger.info(f"Starting opencode server on {self.base_url}...")
        self._proc = await asyncio.create_subprocess_exec(
            executable,
            "serve",
            "--hostname",
            self.hostname,
            "--port",
            str(self.port),
            cwd=self.directory or None,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
        await self._wait_ready()
        logger.info(f"opencode server ready (pid {self._proc.pid})")
        return self.base_url

    async def _wait_ready(self) -> None:
        deadline = time.monotonic() + self.startup_timeout_s
        last_error = ""
        async with httpx.AsyncClient(base_url=self.base_url, timeout=2.0) as client:
            while time.monotonic() < deadline:
                if self._proc is not None and self._proc.returncode is not None:
                    raise AgentRuntimeError(f"opencode server exited with code {self._proc.returncode}")
                try:
                    response = await client.get("/session")
                    if response.status_code < 500:
                        return
                    last_error = f"status {response.status_code}"
                except httpx.HTTPError as e:
                    last_error = str(e)
                await asyncio.sleep(0.25)
        await self.stop()
        raise AgentRuntimeError(
            f"opencode server did not become ready within {self.startup_timeout_s}s ({last_error})"
        )

    async def stop(self, timeout_s: float = 5.0) -> None:
        proc = self._proc
        self._proc = None
        if proc is None or proc.returncode is not None:
            return
        logger.info("Stopping opencode server...")
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            logger.warning("opencode server did not exit, killing it")
            proc.kill()
            await proc.wait()
