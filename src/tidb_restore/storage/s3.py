# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""S3 Storage Backend class definitions."""

from typing import Any, Dict, Optional, Self

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import Field, model_validator

from .classes import StorageBackend, StorageBackendError, StorageConfig, StorageProviderError

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class S3StorageConfig(StorageConfig):
    """Pydantic model for S3 storage config."""

    bucket: Optional[str] = None
    provider: Optional[str] = None
    region: Optional[str] = None
    endpoint: Optional[str] = None
    path: Optional[str] = None
    prefix: Optional[str] = None
    secret_name: Optional[str] = Field(None, alias="secretName")
    storage_class: Optional[str] = Field(None, alias="storageClass")

    @model_validator(mode="after")
    def check_bucket(self) -> Self:
        """Derive the bucket and prefix from the legacy path when the bucket is not set."""
        if not self.bucket and self.path:
            bucket, _, prefix = self.path.removeprefix("s3://").partition("/")
            self.bucket = bucket
            self.prefix = self.prefix or prefix or None
        if not self.bucket:
            raise ValueError("Either 'bucket' or 'path' must be provided")
        return self


class S3StorageBackend(StorageBackend):
    """S3 compatible external storage."""

    def __init__(self, data: Dict[str, Any], credentials: Optional[Dict[str, str]] = None) -> None:
        self._config: S3StorageConfig
        super().__init__(data, credentials, S3StorageConfig)

    @property
    def storage_type(self) -> str:
        """Return the storage type."""
        return "s3"

    @property
    def bucket(self) -> str:
        """Return the S3 bucket name."""
        return self._config.bucket or ""

    @property
    def prefix(self) -> Optional[str]:
        """Return the S3 prefix."""
        return self._config.prefix

    @property
    def credential_env(self) -> Dict[str, str]:
        """Return the AWS credentials environment variables."""
        return {
            "AWS_ACCESS_KEY_ID": "access_key",
            "AWS_SECRET_ACCESS_KEY": "secret_key",
        }

    def _new_client(self, timeout: float):
        try:
            return boto3.client(
                "s3",
                region_name=self._config.region,
                endpoint_url=self._config.endpoint,
                aws_access_key_id=self._credentials.get("access_key"),
                aws_secret_access_key=self._credentials.get("secret_key"),
                config=Config(connect_timeout=timeout, read_timeout=timeout),
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageProviderError(f"Failed to create the S3 client: {e}") from e

    def exists(self, path: str, timeout: float) -> bool:
        """Return True if the object exists in the bucket."""
        try:
            self.connect(timeout).head_object(Bucket=self.bucket, Key=self._key(path))
        except ClientError as ce:
            if ce.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return False
            raise StorageBackendError(f"Failed to check s3://{self.bucket}/{path}") from ce
        except BotoCoreError as be:
            raise StorageBackendError(f"Failed to check s3://{self.bucket}/{path}") from be
        return True

    def read_all(self, path: str, timeout: float) -> bytes:
        """Return the content of the object."""
        try:
            response = self.connect(timeout).get_object(Bucket=self.bucket, Key=self._key(path))
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageBackendError(f"Failed to read s3://{self.bucket}/{path}") from e
