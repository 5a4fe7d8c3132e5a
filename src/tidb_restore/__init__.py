# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""TiDB restore manager library."""

from .conditions import RestoreConditionUpdater, RestoreUpdateStatus, new_condition
from .core import RestoreManager
from .errors import (
    ConditionUpdateError,
    MetadataReadError,
    PVCError,
    PVCTooSmallError,
    RestoreInvalidError,
    RestoreJobBuildError,
    RestoreJobCreateError,
    RestoreManagerError,
    RestoreValidationError,
    SnapshotterError,
    VolumeRestoreError,
)
from .result import SyncResult

__all__ = [
    "RestoreManager",
    "SyncResult",
    "RestoreConditionUpdater",
    "RestoreUpdateStatus",
    "new_condition",
    "RestoreManagerError",
    "RestoreInvalidError",
    "RestoreValidationError",
    "MetadataReadError",
    "RestoreJobBuildError",
    "RestoreJobCreateError",
    "VolumeRestoreError",
    "PVCError",
    "PVCTooSmallError",
    "ConditionUpdateError",
    "SnapshotterError",
]
