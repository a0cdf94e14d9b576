import asyncio
import os
import tempfile
from pathlib import Path
from typing import Callable, Optional

import aiofiles
from loguru import logger

from pyright_playground.config import (
    CONFIG_FILENAME,
    DOCUMENT_FILENAME,
    HANDSHAKE_TIMEOUT_SECONDS,
    LANGSERVER_ENTRY_POINT,
    SCRATCH_PREFIX,
    TERMINATE_GRACE_SECONDS,
)
from pyright_playground.errors import HandshakeError, PlaygroundError, SpawnError
from pyright_playground.lsp_client import LspClient
from pyright_playground.session import Session, SessionOptions

ExitCallback = Callable[[Session, str], None]


async def synthesize_config_file(
    scratch_directory: Path, options: SessionOptions
) -> tuple[Path, str]:
    config_path = scratch_directory / CONFIG_FILENAME
    config_json = options.to_config_json()
    async with aiofiles.open(config_path, "w") as f:
        await f.write(config_json)
    return config_path, config_json


class WorkerHandle:
    """Owns one language server process and the client bound to it."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        client: LspClient,
        terminate_grace_seconds: float = TERMINATE_GRACE_SECONDS,
    ):
        self.process = process
        self.client = client
        self.terminate_grace_seconds = terminate_grace_seconds
        self._closed = False
        self._tasks: list[asyncio.Task] = []

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def alive(self) -> bool:
        return not self._closed and self.process.returncode is None and not self.client.closed

    def watch(self, on_exit: Callable[[Optional[int]], None]) -> None:
        async def wait_for_exit():
            returncode = await self.process.wait()
            on_exit(returncode)

        self._tasks.append(asyncio.create_task(wait_for_exit()))
        if self.process.stderr is not None:
            self._tasks.append(asyncio.create_task(self._drain_stderr()))

    async def _drain_stderr(self) -> None:
        while True:
            line = await self.process.stderr.readline()
            if not line:
                return
            logger.debug(
                f"Logged from pyright language server: {line.decode('utf-8', errors='replace').rstrip()}"
            )

    def cancel_pending(self) -> int:
        return self.client.cancel_pending()

    async def terminate(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self.process.wait(), self.terminate_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"Pyright language server {self.pid} ignored terminate; killing")
                self.process.kill()
                await self.process.wait()

        await self.client.aclose()

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()


class ProcessLauncher:
    def __init__(
        self,
        node_command: str = "node",
        scratch_root: Optional[Path] = None,
        handshake_timeout_seconds: float = HANDSHAKE_TIMEOUT_SECONDS,
        terminate_grace_seconds: float = TERMINATE_GRACE_SECONDS,
        command_factory: Optional[Callable[[Path], list[str]]] = None,
    ):
        self.node_command = node_command
        self.scratch_root = scratch_root
        self.handshake_timeout_seconds = handshake_timeout_seconds
        self.terminate_grace_seconds = terminate_grace_seconds
        self._command_factory = command_factory

    def build_command(self, directory: Path) -> list[str]:
        if self._command_factory is not None:
            return self._command_factory(directory)
        entry_point = (directory / LANGSERVER_ENTRY_POINT).resolve()
        return [
            self.node_command,
            str(entry_point),
            "--stdio",
            f"--clientProcessId={os.getpid()}",
        ]

    def build_environment(self, options: SessionOptions) -> dict[str, str]:
        env = dict(os.environ)
        # Older language server builds ignore the locale sent with initialize.
        if options.locale:
            env["LC_ALL"] = options.locale
        return env

    def create_scratch_directory(self) -> Path:
        if self.scratch_root is not None:
            self.scratch_root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=SCRATCH_PREFIX, dir=self.scratch_root))

    async def launch(self, session: Session, directory: Path, on_exit: ExitCallback) -> None:
        """Start a worker for ``session`` and complete the handshake.

        Fills in ``session.scratch_directory``, ``session.worker`` and
        ``session.client`` as each resource comes into existence, so the
        caller can tear down whatever was created if this raises.
        """
        session.scratch_directory = self.create_scratch_directory()
        config_path, config_json = await synthesize_config_file(
            session.scratch_directory, session.options
        )

        command = self.build_command(directory)
        logger.info(f"Spawning new pyright language server from {directory}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(session.scratch_directory),
                env=self.build_environment(session.options),
            )
        except OSError as e:
            logger.error(f"Pyright language server failed to start: {e}")
            raise SpawnError("Failed to spawn pyright language server instance") from e

        logger.info(f"Pyright language server started (pid {process.pid})")
        client = LspClient(
            process.stdout,
            process.stdin,
            on_close=lambda: on_exit(session, "closed its connection"),
            label=session.short_id,
        )
        worker = WorkerHandle(process, client, self.terminate_grace_seconds)
        session.worker = worker
        session.client = client
        client.start()
        worker.watch(lambda code: on_exit(session, f"exited with code {code}"))

        files = {
            str(config_path): config_json,
            str(session.scratch_directory / DOCUMENT_FILENAME): "",
        }
        try:
            await client.initialize(
                session.scratch_directory,
                files,
                locale=session.options.locale,
                timeout=self.handshake_timeout_seconds,
            )
        except (PlaygroundError, asyncio.TimeoutError) as e:
            logger.error(f"Pyright language server handshake failed: {e!r}")
            raise HandshakeError("Failed to start pyright language server connection") from e
