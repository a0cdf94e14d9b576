import os
from dataclasses import dataclass
from pathlib import Path

PACKAGE_NAME = "basedpyright"
NPM_REGISTRY_URL = "https://registry.npmjs.org"
LANGSERVER_ENTRY_POINT = Path("node_modules") / PACKAGE_NAME / "langserver.index.js"

HTTP_PORT = 3000
CACHE_CAPACITY = 20
SESSION_IDLE_SECONDS = 60
REAP_INTERVAL_SECONDS = 60
MAX_VERSION_COUNT = 50
HANDSHAKE_TIMEOUT_SECONDS = 30.0
TERMINATE_GRACE_SECONDS = 5.0
REGISTRY_TIMEOUT_SECONDS = 15.0

# Without these the language server falls back to whatever interpreter
# happens to be installed in the container it runs in.
DEFAULT_PYTHON_VERSION = "3.12"
DEFAULT_PYTHON_PLATFORM = "All"

CONFIG_FILENAME = "pyrightconfig.json"
DOCUMENT_FILENAME = "Untitled.py"
INDEX_FILENAME = "usage.json"
SCRATCH_PREFIX = "pyright_playground"

VERSIONS_DIR = "pyright_local"
STAGING_DIR = ".staging"


def get_default_data_dir() -> Path:
    data_dir = os.environ.get("PLAYGROUND_DATA_DIR")
    if data_dir:
        return Path(data_dir).expanduser().resolve()
    return Path.home() / ".pyright-playground"


def get_versions_dir(data_dir: Path) -> Path:
    return data_dir / VERSIONS_DIR


def get_version_dir(data_dir: Path, version: str) -> Path:
    return get_versions_dir(data_dir) / version


def get_staging_dir(data_dir: Path) -> Path:
    return get_versions_dir(data_dir) / STAGING_DIR


def get_index_path(data_dir: Path) -> Path:
    return get_versions_dir(data_dir) / INDEX_FILENAME


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


@dataclass
class PlaygroundSettings:
    data_dir: Path
    cache_capacity: int = CACHE_CAPACITY
    session_idle_seconds: float = SESSION_IDLE_SECONDS
    reap_interval_seconds: float = REAP_INTERVAL_SECONDS
    handshake_timeout_seconds: float = HANDSHAKE_TIMEOUT_SECONDS
    npm_registry_url: str = NPM_REGISTRY_URL

    @classmethod
    def from_env(cls) -> "PlaygroundSettings":
        return cls(
            data_dir=get_default_data_dir(),
            cache_capacity=_env_int("PLAYGROUND_CACHE_CAPACITY", CACHE_CAPACITY),
            session_idle_seconds=_env_float(
                "PLAYGROUND_SESSION_IDLE_SECONDS", SESSION_IDLE_SECONDS
            ),
            reap_interval_seconds=_env_float(
                "PLAYGROUND_REAP_INTERVAL_SECONDS", REAP_INTERVAL_SECONDS
            ),
            handshake_timeout_seconds=_env_float(
                "PLAYGROUND_HANDSHAKE_TIMEOUT_SECONDS", HANDSHAKE_TIMEOUT_SECONDS
            ),
            npm_registry_url=os.environ.get("PLAYGROUND_NPM_REGISTRY", NPM_REGISTRY_URL),
        )
