# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Google Cloud Storage Backend class definitions."""

import json
from typing import Any, Dict, Optional

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage
from pydantic import Field

from .classes import StorageBackend, StorageBackendError, StorageConfig, StorageProviderError

CREDENTIALS_KEY = "credentials"


class GcsStorageConfig(StorageConfig):
    """Pydantic model for GCS storage config."""

    bucket: str
    project_id: Optional[str] = Field(None, alias="projectId")
    location: Optional[str] = None
    prefix: Optional[str] = None
    secret_name: Optional[str] = Field(None, alias="secretName")
    storage_class: Optional[str] = Field(None, alias="storageClass")


class GcsStorageBackend(StorageBackend):
    """Google Cloud Storage external storage."""

    def __init__(self, data: Dict[str, Any], credentials: Optional[Dict[str, str]] = None) -> None:
        self._config: GcsStorageConfig
        super().__init__(data, credentials, GcsStorageConfig)

    @property
    def storage_type(self) -> str:
        """Return the storage type."""
        return "gcs"

    @property
    def bucket(self) -> str:
        """Return the GCS bucket name."""
        return self._config.bucket

    @property
    def prefix(self) -> Optional[str]:
        """Return the GCS prefix."""
        return self._config.prefix

    @property
    def credential_env(self) -> Dict[str, str]:
        """Return the GCS credentials environment variables."""
        return {"GCS_SERVICE_ACCOUNT_JSON_KEY": CREDENTIALS_KEY}

    def _new_client(self, timeout: float) -> storage.Client:
        service_account = self._credentials.get(CREDENTIALS_KEY)
        try:
            if not service_account:
                return storage.Client(project=self._config.project_id)
            info = json.loads(service_account)
            return storage.Client.from_service_account_info(info, project=self._config.project_id)
        except json.JSONDecodeError as je:
            raise StorageProviderError("GCS service account key is not valid JSON") from je
        except (GoogleAuthError, ValueError) as e:
            raise StorageProviderError(f"Failed to create the GCS client: {e}") from e

    def exists(self, path: str, timeout: float) -> bool:
        """Return True if the blob exists in the bucket."""
        try:
            blob = self.connect(timeout).bucket(self.bucket).blob(self._key(path))
            return blob.exists(timeout=timeout)
        except GoogleAPIError as ge:
            raise StorageBackendError(f"Failed to check gcs://{self.bucket}/{path}") from ge

    def read_all(self, path: str, timeout: float) -> bytes:
        """Return the content of the blob."""
        try:
            blob = self.connect(timeout).bucket(self.bucket).blob(self._key(path))
            return blob.download_as_bytes(timeout=timeout)
        except GoogleAPIError as ge:
            raise StorageBackendError(f"Failed to read gcs://{self.bucket}/{path}") from ge
