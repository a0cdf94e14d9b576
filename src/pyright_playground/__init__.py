from pyright_playground.cache import VersionCache
from pyright_playground.errors import (
    HandshakeError,
    InstallError,
    PlaygroundError,
    ResolutionError,
    SpawnError,
)
from pyright_playground.launcher import ProcessLauncher
from pyright_playground.manager import SessionManager
from pyright_playground.session import Session, SessionOptions
from pyright_playground.versions import NpmVersionIndex, VersionResolver

__all__ = [
    "HandshakeError",
    "InstallError",
    "NpmVersionIndex",
    "PlaygroundError",
    "ProcessLauncher",
    "ResolutionError",
    "Session",
    "SessionManager",
    "SessionOptions",
    "SpawnError",
    "VersionCache",
    "VersionResolver",
]
