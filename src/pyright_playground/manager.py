import asyncio
import shutil
import time
from typing import Callable, Optional

from loguru import logger

from pyright_playground.cache import VersionCache
from pyright_playground.config import REAP_INTERVAL_SECONDS, SESSION_IDLE_SECONDS
from pyright_playground.errors import HandshakeError
from pyright_playground.launcher import ProcessLauncher
from pyright_playground.scheduler import IdleReaper
from pyright_playground.session import Session, SessionOptions, new_session_id
from pyright_playground.versions import VersionResolver


class SessionManager:
    """Owns the table of live sessions and everything each one holds.

    A session enters the table only after its worker has completed the
    handshake, and leaves it through ``close``, which every failure path
    (explicit close, idle timeout, worker exit) funnels into.
    """

    def __init__(
        self,
        cache: VersionCache,
        resolver: VersionResolver,
        launcher: ProcessLauncher,
        idle_seconds: float = SESSION_IDLE_SECONDS,
        reap_interval_seconds: float = REAP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        reaper: Optional[IdleReaper] = None,
    ):
        self.cache = cache
        self.resolver = resolver
        self.launcher = launcher
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._closing_tasks: set[asyncio.Task] = set()
        self.reaper = reaper or IdleReaper(
            self, interval_seconds=reap_interval_seconds, idle_seconds=idle_seconds
        )

    def now(self) -> float:
        return self._clock()

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    async def create(self, options: Optional[SessionOptions] = None) -> str:
        options = options or SessionOptions()
        version = await self.resolver.resolve(options.pyright_version)
        directory = await self.cache.acquire(version)

        session = Session(
            id=new_session_id(),
            version=version,
            options=options,
            last_access_time=self.now(),
            pinned=True,
        )
        try:
            await self.launcher.launch(session, directory, self._handle_worker_exit)
        except BaseException:
            session.closing = True
            await self._teardown(session)
            raise

        # The worker may have exited between the handshake and now.
        if session.worker is None or not session.worker.alive:
            session.closing = True
            await self._teardown(session)
            raise HandshakeError("Pyright language server exited during startup")

        self._sessions[session.id] = session
        logger.info(f"Created session {session.short_id}... (pyright {version})")
        self.reaper.arm()
        return session.id

    def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None or session.closing:
            return None
        session.touch(self.now())
        return session

    async def close(self, session_id: str) -> bool:
        """Tear down a session; returns False if there was nothing to close."""
        session = self._sessions.get(session_id)
        if session is None or session.closing:
            return False

        session.closing = True
        await self._teardown(session)
        self._sessions.pop(session_id, None)
        logger.info(f"Closed session {session.short_id}...")

        if not self._sessions:
            self.reaper.disarm()
        return True

    async def close_all(self) -> int:
        session_ids = list(self._sessions)
        closed = 0
        for session_id in session_ids:
            if await self.close(session_id):
                closed += 1
        return closed

    async def shutdown(self) -> None:
        closed = await self.close_all()
        if self._closing_tasks:
            await asyncio.gather(*self._closing_tasks, return_exceptions=True)
        await self.reaper.shutdown()
        logger.info(f"Session manager stopped ({closed} sessions closed)")

    async def _teardown(self, session: Session) -> None:
        if session.client is not None:
            cancelled = session.client.cancel_pending()
            if cancelled:
                logger.debug(f"Cancelled {cancelled} requests for session {session.short_id}...")

        if session.worker is not None:
            try:
                await session.worker.terminate()
            except Exception as e:
                logger.warning(
                    f"Failed to terminate worker for session {session.short_id}...: {e}"
                )

        if session.scratch_directory is not None:
            try:
                shutil.rmtree(session.scratch_directory)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(
                    f"Failed to remove scratch directory {session.scratch_directory}: {e}"
                )
            session.scratch_directory = None

        if session.pinned:
            session.pinned = False
            self.cache.unpin(session.version)

    def _handle_worker_exit(self, session: Session, reason: str) -> None:
        if self._sessions.get(session.id) is not session or session.closing:
            return
        logger.info(f"Pyright language server for session {session.short_id}... {reason}")
        task = asyncio.create_task(self.close(session.id))
        self._closing_tasks.add(task)
        task.add_done_callback(self._closing_tasks.discard)

    def status(self) -> dict:
        return {
            "sessions": self.session_count,
            "installed_versions": self.cache.installed_versions(),
        }
