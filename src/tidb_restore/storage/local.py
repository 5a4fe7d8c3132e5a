# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Local volume Storage Backend class definitions."""

from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .classes import StorageBackend, StorageBackendError, StorageConfig


class LocalVolumeMount(BaseModel):
    """Subset of the volume mount of a local storage provider."""

    mount_path: str = Field(alias="mountPath")


class LocalStorageConfig(StorageConfig):
    """Pydantic model for local storage config."""

    volume_mount: LocalVolumeMount = Field(alias="volumeMount")
    prefix: Optional[str] = None


class LocalStorageBackend(StorageBackend):
    """Storage on a volume mounted at the same path in the manager and in the jobs."""

    def __init__(self, data: Dict[str, Any], credentials: Optional[Dict[str, str]] = None) -> None:
        self._config: LocalStorageConfig
        super().__init__(data, credentials, LocalStorageConfig)

    @property
    def storage_type(self) -> str:
        """Return the storage type."""
        return "local"

    @property
    def bucket(self) -> str:
        """Return the mount path of the volume."""
        return self._config.volume_mount.mount_path

    @property
    def prefix(self) -> Optional[str]:
        """Return the directory of the backup inside the volume."""
        return self._config.prefix

    @property
    def remote_path(self) -> str:
        """Return the URL of the backup on the local volume."""
        return f"local://{self._root()}"

    def _root(self) -> Path:
        return Path(self.bucket) / (self.prefix or "").strip("/")

    def exists(self, path: str, timeout: float) -> bool:
        """Return True if the file exists on the volume."""
        return (self._root() / path).is_file()

    def read_all(self, path: str, timeout: float) -> bytes:
        """Return the content of the file."""
        try:
            return (self._root() / path).read_bytes()
        except OSError as oe:
            raise StorageBackendError(f"Failed to read {self._root() / path}") from oe
