# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Azure Blob Storage Backend class definitions."""

from typing import Any, Dict, Optional, Self

from azure.core.exceptions import AzureError
from azure.storage.blob import BlobServiceClient
from pydantic import Field, model_validator

from .classes import StorageBackend, StorageBackendError, StorageConfig, StorageProviderError

ACCOUNT_KEY = "AZURE_STORAGE_ACCOUNT"
STORAGE_KEY = "AZURE_STORAGE_KEY"
SAS_TOKEN_KEY = "AZURE_STORAGE_SAS_TOKEN"


class AzblobStorageConfig(StorageConfig):
    """Pydantic model for Azure storage config."""

    container: Optional[str] = None
    path: Optional[str] = None
    prefix: Optional[str] = None
    storage_account: Optional[str] = Field(None, alias="storageAccount")
    sas_token: Optional[str] = Field(None, alias="sasToken")
    access_tier: Optional[str] = Field(None, alias="accessTier")
    secret_name: Optional[str] = Field(None, alias="secretName")

    @model_validator(mode="after")
    def check_container(self) -> Self:
        """Derive the container and prefix from the legacy path when the container is not set."""
        if not self.container and self.path:
            container, _, prefix = self.path.removeprefix("azure://").partition("/")
            self.container = container
            self.prefix = self.prefix or prefix or None
        if not self.container:
            raise ValueError("Either 'container' or 'path' must be provided")
        return self


class AzblobStorageBackend(StorageBackend):
    """Azure Blob external storage."""

    def __init__(self, data: Dict[str, Any], credentials: Optional[Dict[str, str]] = None) -> None:
        self._config: AzblobStorageConfig
        super().__init__(data, credentials, AzblobStorageConfig)

    @property
    def storage_type(self) -> str:
        """Return the storage type."""
        return "azure"

    @property
    def bucket(self) -> str:
        """Return the Azure container name."""
        return self._config.container or ""

    @property
    def prefix(self) -> Optional[str]:
        """Return the Azure blob prefix."""
        return self._config.prefix

    @property
    def credential_env(self) -> Dict[str, str]:
        """Return the Azure credentials environment variables."""
        if self._config.sas_token:
            return {ACCOUNT_KEY: ACCOUNT_KEY}
        return {
            ACCOUNT_KEY: ACCOUNT_KEY,
            STORAGE_KEY: STORAGE_KEY,
        }

    def _new_client(self, timeout: float) -> BlobServiceClient:
        account = self._config.storage_account or self._credentials.get(ACCOUNT_KEY)
        if not account:
            raise StorageProviderError("Azure storage account is not configured")
        credential = (
            self._config.sas_token
            or self._credentials.get(SAS_TOKEN_KEY)
            or self._credentials.get(STORAGE_KEY)
        )
        if not credential:
            raise StorageProviderError("Either storage key or SAS token must be provided")
        try:
            return BlobServiceClient(
                account_url=f"https://{account}.blob.core.windows.net",
                credential=credential,
                connection_timeout=timeout,
                read_timeout=timeout,
            )
        except ValueError as ve:
            raise StorageProviderError(f"Failed to create the Azure client: {ve}") from ve

    def exists(self, path: str, timeout: float) -> bool:
        """Return True if the blob exists in the container."""
        try:
            blob = self.connect(timeout).get_blob_client(self.bucket, self._key(path))
            return blob.exists(timeout=int(timeout))
        except AzureError as ae:
            raise StorageBackendError(f"Failed to check azure://{self.bucket}/{path}") from ae

    def read_all(self, path: str, timeout: float) -> bytes:
        """Return the content of the blob."""
        try:
            blob = self.connect(timeout).get_blob_client(self.bucket, self._key(path))
            return blob.download_blob(timeout=int(timeout)).readall()
        except AzureError as ae:
            raise StorageBackendError(f"Failed to read azure://{self.bucket}/{path}") from ae
