# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Base external storage backend class definitions."""

import base64
import binascii
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Type

from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.resources.core_v1 import Secret
from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)


class StorageProviderError(Exception):
    """Base class for storage provider exceptions."""


class StorageBackendError(StorageProviderError):
    """Raised when an external storage request fails."""


class StorageConfig(BaseModel):
    """Base Pydantic model for storage config."""

    model_config = ConfigDict(validate_by_name=True, validate_by_alias=True, extra="ignore")

    @classmethod
    def verror_to_str(cls, ve: ValidationError) -> str:
        """Convert a Pydantic ValidationError to a string."""
        error_messages = []
        for error in ve.errors():
            field = ".".join(map(str, error["loc"]))
            message = error["msg"].replace("Field ", "")
            error_messages.append(f"'{field}' {message}")
        return f"{cls.__name__} errors: " + "; ".join(error_messages)


class StorageBackend(ABC):
    """Base class for the external storage holding backup data and metadata."""

    def __init__(
        self,
        data: Dict[str, Any],
        credentials: Optional[Dict[str, str]],
        config_cls: Type[StorageConfig],
    ) -> None:
        try:
            self._config = config_cls(**data)
        except ValidationError as ve:
            raise StorageProviderError(config_cls.verror_to_str(ve)) from ve
        self._credentials = credentials or {}
        self._connection: Any = None

    @property
    @abstractmethod
    def storage_type(self) -> str:  # pragma: no cover
        """Return the storage type used as the URL scheme of the backup path."""
        ...

    @property
    @abstractmethod
    def bucket(self) -> str:  # pragma: no cover
        """Return the storage bucket or container name."""
        ...

    @property
    @abstractmethod
    def prefix(self) -> Optional[str]:  # pragma: no cover
        """Return the storage prefix of the backup."""
        ...

    @property
    def secret_name(self) -> Optional[str]:
        """Return the name of the Secret holding the storage credentials."""
        return getattr(self._config, "secret_name", None)

    @property
    def credential_env(self) -> Dict[str, str]:
        """Return the environment variables the jobs read from the credentials Secret.

        The mapping goes from environment variable name to Secret key.
        """
        return {}

    @property
    def remote_path(self) -> str:
        """Return the URL of the backup on the external storage."""
        path = "/".join(part.strip("/") for part in (self.bucket, self.prefix) if part)
        return f"{self.storage_type}://{path}"

    def _new_client(self, timeout: float) -> Any:
        """Return a new client of the external storage; None when no client is needed."""
        return None

    def connect(self, timeout: float) -> Any:
        """Return the client of the external storage, creating it on first use.

        Args:
            timeout (float): Bound in seconds of the requests of the client.

        Raises:
            StorageProviderError: If the credentials or the configuration cannot
                be used to build a client.
        """
        if self._connection is None:
            self._connection = self._new_client(timeout)
        return self._connection

    def _key(self, path: str) -> str:
        """Return the object key of a file of the backup."""
        if self.prefix:
            return f"{self.prefix.strip('/')}/{path.lstrip('/')}"
        return path.lstrip("/")

    @abstractmethod
    def exists(self, path: str, timeout: float) -> bool:  # pragma: no cover
        """Return True if the file exists under the backup prefix.

        Raises:
            StorageBackendError: If the request fails.
        """
        ...

    @abstractmethod
    def read_all(self, path: str, timeout: float) -> bytes:  # pragma: no cover
        """Return the whole content of the file under the backup prefix.

        Raises:
            StorageBackendError: If the request fails.
        """
        ...


def read_secret_data(kube_client: Client, name: str, namespace: str) -> Dict[str, str]:
    """Return the decoded data of a Secret.

    Args:
        kube_client (Client): The Kubernetes client used to interact with the cluster.
        name (str): The name of the Secret.
        namespace (str): The namespace of the Secret.

    Raises:
        ApiError: If the Secret cannot be retrieved.
        StorageProviderError: If a value of the Secret is not base64 encoded UTF-8 text.
    """
    try:
        secret = kube_client.get(Secret, name=name, namespace=namespace)
    except ApiError as ae:
        logger.error("Failed to get secret '%s' in namespace '%s': %s", name, namespace, ae)
        raise ae
    data = {}
    for key, value in (secret.data or {}).items():
        try:
            data[key] = base64.b64decode(value, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise StorageProviderError(
                f"Secret '{name}' in namespace '{namespace}' has an invalid value for '{key}'"
            ) from e
    return data
