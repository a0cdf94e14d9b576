import json
import math
import os
import shutil
import uuid
from pathlib import Path

import aiofiles
from loguru import logger

from pyright_playground.config import (
    INDEX_FILENAME,
    STAGING_DIR,
    get_index_path,
    get_staging_dir,
    get_version_dir,
    get_versions_dir,
)
from pyright_playground.storage.backend import InstalledVersion

NEVER_USED = -math.inf


class ArtifactStore:
    """Installed backend versions on local disk plus their usage index.

    A version is installed if and only if its directory exists. The usage
    index only orders versions for eviction; directories it does not know
    about sort as never used.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.versions_dir = get_versions_dir(data_dir)
        self.staging_dir = get_staging_dir(data_dir)
        self.index_path = get_index_path(data_dir)
        self._last_used: dict[str, float] = {}

    def get_version_dir(self, version: str) -> Path:
        return get_version_dir(self.data_dir, version)

    def is_installed(self, version: str) -> bool:
        return self.get_version_dir(version).is_dir()

    def list_versions(self) -> list[str]:
        if not self.versions_dir.exists():
            return []
        return sorted(
            d.name
            for d in self.versions_dir.iterdir()
            if d.is_dir() and d.name != STAGING_DIR and not d.name.startswith(".")
        )

    def last_used(self, version: str) -> float:
        return self._last_used.get(version, NEVER_USED)

    def entries(self) -> list[InstalledVersion]:
        return [
            InstalledVersion(
                version=version,
                directory=self.get_version_dir(version),
                last_used_at=self.last_used(version),
            )
            for version in self.list_versions()
        ]

    async def _read_index(self) -> dict[str, float]:
        if not self.index_path.exists():
            return {}
        try:
            async with aiofiles.open(self.index_path, "r") as f:
                content = await f.read()
            data = json.loads(content)
            return {
                str(version): float(timestamp)
                for version, timestamp in data.get("versions", {}).items()
            }
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable usage index {self.index_path}: {e}")
            return {}

    async def load(self) -> None:
        self.versions_dir.mkdir(parents=True, exist_ok=True)
        if self.staging_dir.exists():
            shutil.rmtree(self.staging_dir, ignore_errors=True)

        index = await self._read_index()
        installed = set(self.list_versions())
        self._last_used = {v: t for v, t in index.items() if v in installed}

        dropped = set(index) - installed
        orphans = installed - set(index)
        if dropped:
            logger.info(f"Dropped {len(dropped)} usage entries without an installed directory")
        if orphans:
            logger.info(f"Found {len(orphans)} installed versions missing from the usage index")
        if dropped:
            await self.save()

    async def save(self) -> None:
        self.versions_dir.mkdir(parents=True, exist_ok=True)
        data = {
            "versions": {
                version: timestamp
                for version, timestamp in sorted(self._last_used.items())
                if math.isfinite(timestamp)
            }
        }
        tmp_path = self.versions_dir / f".{INDEX_FILENAME}.{uuid.uuid4().hex}.tmp"
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(data, indent=2))
            os.replace(tmp_path, self.index_path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    async def record_use(self, version: str, timestamp: float) -> None:
        self._last_used[version] = timestamp
        await self.save()

    def new_staging_dir(self, version: str) -> Path:
        path = self.staging_dir / f"{version}-{uuid.uuid4().hex[:8]}"
        path.mkdir(parents=True)
        return path

    def commit(self, version: str, staging_path: Path) -> Path:
        destination = self.get_version_dir(version)
        os.replace(staging_path, destination)
        return destination

    def discard(self, path: Path) -> None:
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)

    async def remove(self, version: str) -> None:
        """Uninstall ``version``; a partially deleted tree is never left in place.

        The directory is first moved into staging, which ``load`` clears on
        the next start if the delete below fails.
        """
        directory = self.get_version_dir(version)
        doomed = None
        if directory.exists():
            self.staging_dir.mkdir(parents=True, exist_ok=True)
            doomed = self.staging_dir / f"{version}-evicted-{uuid.uuid4().hex[:8]}"
            os.replace(directory, doomed)

        self._last_used.pop(version, None)
        await self.save()

        if doomed is not None:
            try:
                shutil.rmtree(doomed)
            except OSError as e:
                logger.warning(f"Failed to delete evicted pyright {version} at {doomed}: {e}")
