from pyright_playground.storage.backend import InstalledVersion, Installer
from pyright_playground.storage.local import ArtifactStore
from pyright_playground.storage.npm import NpmInstaller

__all__ = ["InstalledVersion", "Installer", "ArtifactStore", "NpmInstaller"]
