from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable


@dataclass
class InstalledVersion:
    version: str
    directory: Path
    last_used_at: float


@runtime_checkable
class Installer(Protocol):
    async def install(self, version: str, destination: Path) -> None: ...
