# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""External storage module."""

from typing import Dict, Optional, Type

from ..crds.restore import RestoreSpecModel
from .azure import AzblobStorageBackend, AzblobStorageConfig
from .classes import (
    StorageBackend,
    StorageBackendError,
    StorageProviderError,
    read_secret_data,
)
from .gcs import GcsStorageBackend, GcsStorageConfig
from .local import LocalStorageBackend, LocalStorageConfig
from .s3 import S3StorageBackend, S3StorageConfig

STORAGE_BACKENDS: Dict[str, Type[StorageBackend]] = {
    "s3": S3StorageBackend,
    "gcs": GcsStorageBackend,
    "azblob": AzblobStorageBackend,
    "local": LocalStorageBackend,
}


def storage_type(spec: RestoreSpecModel) -> str:
    """Return the configured storage provider field of the restore spec.

    Raises:
        StorageProviderError: If no storage provider is configured.
    """
    for field in STORAGE_BACKENDS:
        if getattr(spec, field, None) is not None:
            return field
    raise StorageProviderError("storage provider is not configured")


def new_storage_backend(
    spec: RestoreSpecModel, credentials: Optional[Dict[str, str]] = None
) -> StorageBackend:
    """Return the storage backend configured in the restore spec.

    Raises:
        StorageProviderError: If the storage provider is missing or invalid.
    """
    field = storage_type(spec)
    provider = getattr(spec, field)
    return STORAGE_BACKENDS[field](provider.to_dict(), credentials)


def backup_data_path(spec: RestoreSpecModel) -> str:
    """Return the URL of the backup data passed to the restore tools.

    Raises:
        StorageProviderError: If the storage provider is missing or invalid.
    """
    return new_storage_backend(spec).remote_path


__all__ = [
    "StorageBackend",
    "StorageBackendError",
    "StorageProviderError",
    "S3StorageBackend",
    "S3StorageConfig",
    "GcsStorageBackend",
    "GcsStorageConfig",
    "AzblobStorageBackend",
    "AzblobStorageConfig",
    "LocalStorageBackend",
    "LocalStorageConfig",
    "backup_data_path",
    "new_storage_backend",
    "read_secret_data",
    "storage_type",
]
