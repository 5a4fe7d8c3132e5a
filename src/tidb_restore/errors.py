# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Restore manager exceptions."""

from typing import Optional


class RestoreManagerError(Exception):
    """Base class for restore manager exceptions.

    Every error carries a short machine-readable reason, recorded as the
    reason of the restore condition, next to the human readable message.
    """

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or reason)
        self.reason = reason

    @property
    def message(self) -> str:
        """Return the human readable message."""
        return str(self)


class RestoreInvalidError(RestoreManagerError):
    """Raised when the restore spec is invalid; the restore must not be retried."""


class RestoreValidationError(RestoreManagerError):
    """Raised when the restore does not match the target cluster or the backup."""

    def __init__(self, message: str) -> None:
        super().__init__("InvalidSpec", message)


class MetadataReadError(RestoreManagerError):
    """Raised when the backup metadata cannot be read from external storage."""


class RestoreJobBuildError(RestoreManagerError):
    """Raised when the restore job specification cannot be built."""


class RestoreJobCreateError(RestoreManagerError):
    """Raised when the restore job cannot be created."""


class VolumeRestoreError(RestoreManagerError):
    """Raised when a step of the volume snapshot restore fails."""


class PVCError(RestoreManagerError):
    """Raised when the restore claim cannot be ensured."""


class ConditionUpdateError(RestoreManagerError):
    """Raised when a restore condition cannot be persisted."""


class SnapshotterError(RestoreManagerError):
    """Raised by the cloud volume snapshotters."""


class PVCTooSmallError(PVCError, RestoreInvalidError):
    """Raised when an existing restore claim is smaller than requested; it is never resized."""
