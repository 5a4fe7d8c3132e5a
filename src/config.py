# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Configuration for the restore manager."""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, ValidationError, field_validator

from constants import (
    DEFAULT_BACKUP_MANAGER_IMAGE,
    DEFAULT_STORAGE_SIZE,
    METADATA_READ_TIMEOUT,
    REQUEUE_DELAY,
    CloudProvider,
)

ENV_PREFIX = "RESTORE_MANAGER_"


class ManagerConfig(BaseModel):
    """Manager for the structured configuration."""

    backup_manager_image: str = DEFAULT_BACKUP_MANAGER_IMAGE
    default_storage_size: str = DEFAULT_STORAGE_SIZE
    metadata_read_timeout: float = METADATA_READ_TIMEOUT
    requeue_delay: float = REQUEUE_DELAY
    volume_snapshot_provider: CloudProvider = CloudProvider.AWS
    cloud_region: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def blank_string(cls, value):
        """Convert empty strings to None."""
        if value == "":
            return None
        return value

    @field_validator("backup_manager_image", "default_storage_size")
    @classmethod
    def required_string(cls, value: Optional[str]) -> str:
        """Reject unset images and sizes."""
        if not value:
            raise ValueError("must not be empty")
        return value

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ManagerConfig":
        """Build the configuration from RESTORE_MANAGER_* environment variables.

        Raises:
            ValueError: If any of the values is invalid.
        """
        environ = os.environ if environ is None else environ
        data = {
            name: environ[ENV_PREFIX + name.upper()]
            for name in cls.model_fields
            if ENV_PREFIX + name.upper() in environ
        }
        try:
            return cls(**data)
        except ValidationError as ve:
            errors = "; ".join(
                f"'{'.'.join(map(str, e['loc']))}' {e['msg']}" for e in ve.errors()
            )
            raise ValueError(f"Invalid configuration: {errors}") from ve
