import asyncio
import sys
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from pyright_playground.cache import VersionCache
from pyright_playground.config import LANGSERVER_ENTRY_POINT
from pyright_playground.launcher import ProcessLauncher
from pyright_playground.manager import SessionManager
from pyright_playground.storage.local import ArtifactStore
from pyright_playground.versions import VersionResolver

FAKE_LANGSERVER = Path(__file__).parent / "fake_langserver.py"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeInstaller:
    """Writes a placeholder language server entry point instead of running npm."""

    def __init__(self, failing: set[str] | None = None):
        self.calls: list[str] = []
        self.failing = failing or set()
        self.gate: asyncio.Event | None = None

    async def install(self, version: str, destination: Path) -> None:
        self.calls.append(version)
        entry_point = destination / LANGSERVER_ENTRY_POINT
        entry_point.parent.mkdir(parents=True, exist_ok=True)
        if self.gate is not None:
            await self.gate.wait()
        if version in self.failing:
            raise RuntimeError(f"no such version {version}")
        entry_point.write_text("// placeholder\n")


class FakeVersionIndex:
    def __init__(self, versions: list[str] | None = None, error: Exception | None = None):
        self.versions = versions or []
        self.error = error
        self.calls = 0

    async def list_versions(self) -> list[str]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.versions)


def fake_langserver_command(mode: str = "normal"):
    def factory(directory: Path) -> list[str]:
        return [sys.executable, str(FAKE_LANGSERVER), mode]

    return factory


@pytest.fixture
def temp_data_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def installer():
    return FakeInstaller()


@pytest.fixture
def store(temp_data_dir):
    return ArtifactStore(temp_data_dir)


@pytest.fixture
def make_cache(store, installer, clock):
    def _make(capacity: int = 20) -> VersionCache:
        return VersionCache(store, installer, capacity=capacity, clock=clock)

    return _make


@pytest.fixture
def scratch_root(temp_data_dir):
    return temp_data_dir / "scratch"


@pytest.fixture
def make_launcher(scratch_root):
    def _make(mode: str = "normal", handshake_timeout: float = 10.0) -> ProcessLauncher:
        return ProcessLauncher(
            scratch_root=scratch_root,
            handshake_timeout_seconds=handshake_timeout,
            terminate_grace_seconds=2.0,
            command_factory=fake_langserver_command(mode),
        )

    return _make


@pytest_asyncio.fixture
async def make_manager(make_cache, make_launcher, clock):
    managers: list[SessionManager] = []

    def _make(
        mode: str = "normal",
        versions: list[str] | None = None,
        capacity: int = 20,
        handshake_timeout: float = 10.0,
    ) -> SessionManager:
        manager = SessionManager(
            make_cache(capacity),
            VersionResolver(FakeVersionIndex(versions or ["1.1.300", "1.1.299"])),
            make_launcher(mode, handshake_timeout),
            idle_seconds=60,
            reap_interval_seconds=60,
            clock=clock,
        )
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        await manager.shutdown()


async def wait_for(predicate, timeout: float = 5.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.02)
    return True
