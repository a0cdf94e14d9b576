import json
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from pyright_playground.config import DEFAULT_PYTHON_PLATFORM, DEFAULT_PYTHON_VERSION
from pyright_playground.errors import InvalidOptionsError

if TYPE_CHECKING:
    from pyright_playground.launcher import WorkerHandle
    from pyright_playground.lsp_client import LspClient


_OPTION_KEYS = {
    "pythonVersion": "python_version",
    "pythonPlatform": "python_platform",
    "pyrightVersion": "pyright_version",
    "typeCheckingMode": "type_checking_mode",
    "configOverrides": "config_overrides",
    "locale": "locale",
}


@dataclass(frozen=True)
class SessionOptions:
    python_version: Optional[str] = None
    python_platform: Optional[str] = None
    pyright_version: Optional[str] = None
    type_checking_mode: Optional[str] = None
    config_overrides: dict[str, bool] = field(default_factory=dict)
    locale: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SessionOptions":
        """Build options from an API payload; camelCase and snake_case keys are both accepted."""
        if not data:
            return cls()
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = _OPTION_KEYS.get(key, key)
            if name in _OPTION_KEYS.values() and value is not None:
                kwargs[name] = value
        overrides = kwargs.get("config_overrides") or {}
        if not isinstance(overrides, dict):
            raise InvalidOptionsError("configOverrides must be an object")
        for key, value in overrides.items():
            if not isinstance(value, bool):
                raise InvalidOptionsError(
                    f"configOverrides.{key} must be true or false, got {value!r}"
                )
        kwargs["config_overrides"] = dict(overrides)
        return cls(**kwargs)

    def to_config(self) -> dict:
        config: dict[str, Any] = {
            "pythonVersion": self.python_version or DEFAULT_PYTHON_VERSION,
            "pythonPlatform": self.python_platform or DEFAULT_PYTHON_PLATFORM,
        }
        if self.type_checking_mode:
            config["typeCheckingMode"] = self.type_checking_mode
        # Overrides are merged last so they win over computed defaults.
        config.update(self.config_overrides)
        return config

    def to_config_json(self) -> str:
        return json.dumps(self.to_config())


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass(eq=False)
class Session:
    """One live language server bound to one caller.

    ``worker`` and ``client`` are filled in by the launcher as startup
    progresses; a session only becomes visible through the manager once
    both are present and the handshake has completed.
    """

    id: str
    version: str
    options: SessionOptions
    last_access_time: float
    scratch_directory: Optional[Path] = None
    worker: Optional["WorkerHandle"] = None
    client: Optional["LspClient"] = None
    closing: bool = False
    pinned: bool = False

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def touch(self, now: float) -> None:
        self.last_access_time = now

    def idle_seconds(self, now: float) -> float:
        return now - self.last_access_time

    def to_dict(self) -> dict:
        return {
            "session_id": self.id,
            "pyright_version": self.version,
            "last_access_time": self.last_access_time,
            "scratch_directory": str(self.scratch_directory) if self.scratch_directory else None,
        }
