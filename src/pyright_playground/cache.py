"""Bounded least-recently-used cache of installed backend versions.

Installs are serialized per version so concurrent requests for the same
version install it once; different versions install in parallel. A pin
keeps a version from being evicted while it backs a live session or is
being installed.
"""

import asyncio
import re
import time
from collections import Counter
from pathlib import Path
from typing import Callable

from loguru import logger

from pyright_playground.config import CACHE_CAPACITY
from pyright_playground.errors import InstallError, InvalidVersionError
from pyright_playground.storage.backend import Installer
from pyright_playground.storage.local import ArtifactStore

_VERSION_PATTERN = re.compile(r"^[0-9A-Za-z][0-9A-Za-z.+-]*$")


def validate_version(version: str) -> None:
    if not version or not _VERSION_PATTERN.match(version) or ".." in version:
        raise InvalidVersionError(f"Invalid pyright version: {version!r}")


class VersionCache:
    def __init__(
        self,
        store: ArtifactStore,
        installer: Installer,
        capacity: int = CACHE_CAPACITY,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.installer = installer
        self.capacity = capacity
        self._clock = clock
        self._pins: Counter[str] = Counter()
        self._install_locks: dict[str, asyncio.Lock] = {}
        # Coroutines holding or waiting on each install lock.
        self._lock_users: Counter[str] = Counter()

    async def load(self) -> None:
        await self.store.load()

    def pin(self, version: str) -> None:
        self._pins[version] += 1

    def unpin(self, version: str) -> None:
        if self._pins[version] <= 1:
            self._pins.pop(version, None)
        else:
            self._pins[version] -= 1

    def is_pinned(self, version: str) -> bool:
        return self._pins[version] > 0

    def installed_versions(self) -> list[str]:
        return self.store.list_versions()

    async def acquire(self, version: str) -> Path:
        """Ensure ``version`` is installed and return its directory with a pin held.

        The pin is taken before the first suspension point so eviction can
        never remove the version between selection and use. Callers release
        it with ``unpin`` once the session is torn down.
        """
        validate_version(version)
        self.pin(version)
        try:
            return await self.ensure_installed(version)
        except BaseException:
            self.unpin(version)
            raise

    async def ensure_installed(self, version: str) -> Path:
        validate_version(version)
        lock = self._install_locks.setdefault(version, asyncio.Lock())
        self._lock_users[version] += 1
        self.pin(version)
        try:
            async with lock:
                if self.store.is_installed(version):
                    logger.info(f"Pyright version {version} already installed")
                    await self.store.record_use(version, self._clock())
                    return self.store.get_version_dir(version)

                directory = await self._install(version)
                await self.store.record_use(version, self._clock())
                await self._evict()
                return directory
        finally:
            self.unpin(version)
            self._release_lock(version)

    def _release_lock(self, version: str) -> None:
        self._lock_users[version] -= 1
        if self._lock_users[version] <= 0:
            self._lock_users.pop(version, None)
            self._install_locks.pop(version, None)

    async def _install(self, version: str) -> Path:
        logger.info(f"Attempting to install pyright version {version}")
        staging = self.store.new_staging_dir(version)
        try:
            await self.installer.install(version, staging)
            directory = self.store.commit(version, staging)
        except Exception as e:
            self.store.discard(staging)
            logger.error(f"Failed to install pyright {version} (error: {e})")
            if isinstance(e, InstallError):
                raise
            raise InstallError(f"Failed to install pyright@{version}: {e}") from e
        logger.info(f"Install of pyright {version} succeeded")
        return directory

    def _eviction_candidate(self) -> str | None:
        candidates = [e for e in self.store.entries() if not self.is_pinned(e.version)]
        if not candidates:
            return None
        return min(candidates, key=lambda e: (e.last_used_at, e.version)).version

    async def _evict(self) -> list[str]:
        evicted = []
        while len(self.store.list_versions()) > self.capacity:
            version = self._eviction_candidate()
            if version is None:
                logger.warning(
                    f"Pyright cache holds {len(self.store.list_versions())} versions "
                    f"(capacity {self.capacity}) but all are in use"
                )
                break
            logger.info(f"Evicting least recently used pyright version {version}")
            try:
                await self.store.remove(version)
            except OSError as e:
                logger.warning(f"Failed to evict pyright version {version}: {e}")
                break
            evicted.append(version)
        return evicted
