import asyncio
from typing import Optional, Protocol

import aiohttp
from loguru import logger

from pyright_playground.config import (
    MAX_VERSION_COUNT,
    NPM_REGISTRY_URL,
    PACKAGE_NAME,
    REGISTRY_TIMEOUT_SECONDS,
)
from pyright_playground.errors import ResolutionError


class VersionIndex(Protocol):
    async def list_versions(self) -> list[str]: ...


def is_prerelease(version: str) -> bool:
    return "-" in version


def filter_release_versions(versions: list[str]) -> list[str]:
    return [v for v in versions if not is_prerelease(v)]


class NpmVersionIndex:
    """Reads published versions of a package from the npm registry."""

    def __init__(
        self,
        package: str = PACKAGE_NAME,
        registry_url: str = NPM_REGISTRY_URL,
        timeout_seconds: float = REGISTRY_TIMEOUT_SECONDS,
    ):
        self.package = package
        self.registry_url = registry_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def _fetch_document(self) -> dict:
        url = f"{self.registry_url}/{self.package}"
        headers = {"Accept": "application/vnd.npm.install-v1+json"}
        async with aiohttp.ClientSession() as session:
            async with session.get(
                url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as response:
                response.raise_for_status()
                return await response.json(content_type=None)

    async def list_versions(self) -> list[str]:
        """Return every published version, newest first."""
        document = await self._fetch_document()
        versions = document.get("versions")
        if not isinstance(versions, dict):
            raise ValueError(f"Registry document for {self.package} has no versions")
        # Registry documents list versions in publish order.
        return list(reversed(list(versions.keys())))


async def get_pyright_versions(
    index: VersionIndex, limit: int = MAX_VERSION_COUNT
) -> list[str]:
    try:
        versions = await index.list_versions()
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
        raise ResolutionError(f"Failed to get versions of pyright: {e}") from e
    return filter_release_versions(versions)[:limit]


class VersionResolver:
    def __init__(self, index: VersionIndex):
        self.index = index

    async def resolve(self, requested: Optional[str] = None) -> str:
        logger.info(f"Pyright version {requested or 'latest'} requested")
        if requested:
            return requested

        versions = await get_pyright_versions(self.index)
        if not versions:
            raise ResolutionError("Failed to get latest version of pyright: no releases found")

        latest = versions[0]
        logger.info(f"Received latest pyright version from npm index: {latest}")
        return latest
