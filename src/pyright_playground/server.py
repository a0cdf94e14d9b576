import asyncio
import signal
from typing import Optional

import uvicorn
from fastapi import FastAPI
from loguru import logger

from pyright_playground.cache import VersionCache
from pyright_playground.config import HTTP_PORT, PACKAGE_NAME, PlaygroundSettings
from pyright_playground.launcher import ProcessLauncher
from pyright_playground.manager import SessionManager
from pyright_playground.routes import register_routes
from pyright_playground.storage import ArtifactStore, NpmInstaller
from pyright_playground.storage.npm import npm_available
from pyright_playground.versions import NpmVersionIndex, VersionIndex, VersionResolver


def create_app(manager: SessionManager, version_index: VersionIndex) -> FastAPI:
    app = FastAPI(
        title="Pyright Playground",
        description="Per-caller pyright language server sessions",
    )
    register_routes(app, manager, version_index)
    return app


def build_manager(
    settings: PlaygroundSettings, version_index: Optional[VersionIndex] = None
) -> tuple[SessionManager, VersionIndex]:
    version_index = version_index or NpmVersionIndex(
        package=PACKAGE_NAME, registry_url=settings.npm_registry_url
    )
    cache = VersionCache(
        ArtifactStore(settings.data_dir),
        NpmInstaller(package=PACKAGE_NAME, registry_url=settings.npm_registry_url),
        capacity=settings.cache_capacity,
    )
    manager = SessionManager(
        cache,
        VersionResolver(version_index),
        ProcessLauncher(handshake_timeout_seconds=settings.handshake_timeout_seconds),
        idle_seconds=settings.session_idle_seconds,
        reap_interval_seconds=settings.reap_interval_seconds,
    )
    return manager, version_index


class PlaygroundServer:
    """Runs the HTTP API and owns the session manager's lifecycle."""

    def __init__(
        self,
        settings: Optional[PlaygroundSettings] = None,
        host: str = "0.0.0.0",
        port: int = HTTP_PORT,
    ):
        self.settings = settings or PlaygroundSettings.from_env()
        self.host = host
        self.port = port
        self.manager, self.version_index = build_manager(self.settings)
        self.app = create_app(self.manager, self.version_index)
        self.http_server: Optional[uvicorn.Server] = None
        self._stopped = False

    async def start(self):
        """Load the version cache, then serve until asked to exit."""
        if not npm_available():
            logger.warning("npm not found on PATH; pyright versions cannot be installed")

        await self.manager.cache.load()
        installed = self.manager.cache.installed_versions()
        logger.info(
            f"Pyright version cache at {self.manager.cache.store.versions_dir} "
            f"({len(installed)} installed, capacity {self.settings.cache_capacity})"
        )

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
            access_log=True,
        )
        self.http_server = uvicorn.Server(config)

        logger.info(f"Pyright playground listening on http://{self.host}:{self.port}")
        try:
            await self.http_server.serve()
        finally:
            await self.stop()

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        logger.info("Shutting down pyright playground")

        if self.http_server:
            self.http_server.should_exit = True

        await self.manager.shutdown()
        logger.info("All sessions closed")


async def run_server_async(server: PlaygroundServer):
    loop = asyncio.get_running_loop()

    def handle_shutdown(signum):
        logger.info(f"Received signal {signum}, shutting down...")
        if server.http_server:
            server.http_server.should_exit = True

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))

    await server.start()


def run_server(server: PlaygroundServer):
    """Blocks until the server shuts down."""
    asyncio.run(run_server_async(server))
