import asyncio
import shutil
from pathlib import Path

from loguru import logger

from pyright_playground.config import NPM_REGISTRY_URL, PACKAGE_NAME
from pyright_playground.errors import InstallError


def npm_available() -> bool:
    return shutil.which("npm") is not None


class NpmInstaller:
    """Materializes ``<package>@<version>`` into a directory with ``npm install``."""

    def __init__(
        self,
        package: str = PACKAGE_NAME,
        registry_url: str = NPM_REGISTRY_URL,
        npm_command: str = "npm",
    ):
        self.package = package
        self.registry_url = registry_url
        self.npm_command = npm_command

    def _build_command(self, version: str, destination: Path) -> list[str]:
        return [
            self.npm_command,
            "install",
            "--prefix",
            str(destination),
            "--registry",
            self.registry_url,
            "--no-save",
            "--no-audit",
            "--no-fund",
            "--omit=dev",
            f"{self.package}@{version}",
        ]

    async def install(self, version: str, destination: Path) -> None:
        (destination / "node_modules").mkdir(parents=True, exist_ok=True)
        command = self._build_command(version, destination)
        logger.debug(f"Running {' '.join(command)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(destination),
            )
        except OSError as e:
            raise InstallError(f"Failed to run {self.npm_command}: {e}") from e

        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip().splitlines()[-5:]
            raise InstallError(
                f"npm install of {self.package}@{version} exited with "
                f"{proc.returncode}: {' '.join(detail)}"
            )
