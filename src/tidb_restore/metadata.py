# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Backup metadata written by BR on the external storage.

BR records the topology and configuration of the source cluster next to the
backup (``backupmeta``), and the volumes it created during the first stage of
a volume snapshot restore (``restoremeta``). Both documents share one JSON
layout. They can be tens of megabytes large, which is why they do not travel
through annotations or ConfigMaps.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from lightkube import Client
from lightkube.core.exceptions import ApiError
from pydantic import BaseModel, Field, ValidationError

from constants import CLUSTER_BACKUP_META, CLUSTER_RESTORE_META, METADATA_READ_TIMEOUT

from .crds.restore import Restore
from .crds.tidbcluster import TidbClusterModel, component_config
from .errors import MetadataReadError
from .storage import (
    StorageBackend,
    StorageProviderError,
    new_storage_backend,
    read_secret_data,
    storage_type,
)

logger = logging.getLogger(__name__)


class VolumeInfo(BaseModel):
    """Volume of a TiKV store at backup time."""

    volume_id: str
    type: Optional[str] = None
    mount_path: Optional[str] = None
    snapshot_id: Optional[str] = None
    restore_volume_id: Optional[str] = None


class StoreInfo(BaseModel):
    """TiKV store at backup time."""

    store_id: int
    volumes: Optional[List[VolumeInfo]] = None


class Component(BaseModel):
    """Replica count of a component at backup time."""

    replicas: int = 0


class TiKVBackup(Component):
    """TiKV stores at backup time."""

    stores: Optional[List[StoreInfo]] = None


class KubernetesBackup(BaseModel):
    """Kubernetes objects of the source cluster at backup time."""

    pvcs: Optional[List[Dict[str, Any]]] = None
    pvs: Optional[List[Dict[str, Any]]] = None
    tidb_cluster: Optional[Dict[str, Any]] = Field(None, alias="crd_tidb_cluster")
    options: Optional[Dict[str, Any]] = None


class CloudSnapBackup(BaseModel):
    """Cluster metadata recorded by a volume snapshot backup."""

    tikv: Optional[TiKVBackup] = None
    pd: Component = Component()
    tidb: Component = Component()
    kubernetes: Optional[KubernetesBackup] = None
    options: Optional[Dict[str, Any]] = None
    region: Optional[str] = None

    @property
    def source_cluster(self) -> Optional[TidbClusterModel]:
        """Return the source TidbCluster recorded in the metadata."""
        if not self.kubernetes or not self.kubernetes.tidb_cluster:
            return None
        return TidbClusterModel.from_dict(self.kubernetes.tidb_cluster)

    def source_replicas(self) -> Tuple[int, int]:
        """Return the TiFlash and TiKV replica counts of the source cluster.

        A component missing from the source cluster counts as zero replicas.
        """
        tc = self.source_cluster
        spec = tc.spec if tc else None
        tiflash = spec.tiflash.replicas if spec and spec.tiflash else 0
        tikv = spec.tikv.replicas if spec and spec.tikv else 0
        return tiflash, tikv

    def source_tikv_config(self) -> Optional[Dict[str, Any]]:
        """Return the TiKV config of the source cluster, if any."""
        tc = self.source_cluster
        if not tc or not tc.spec or not tc.spec.tikv:
            return None
        return component_config(tc.spec.tikv.config)


class BackupMetadataReader:
    """Read backup metadata documents from the restore's external storage."""

    def __init__(self, kube_client: Client, timeout: float = METADATA_READ_TIMEOUT) -> None:
        """Initialize the reader.

        Args:
            kube_client (Client): The lightkube client used to read storage credentials.
            timeout (float): Bound in seconds of each external storage request.
        """
        self._kube_client = kube_client
        self._timeout = timeout

    def _storage_backend(self, restore: Restore) -> StorageBackend:
        spec = restore.spec
        provider = getattr(spec, storage_type(spec))
        secret_name = getattr(provider, "secretName", None)
        credentials = None
        if secret_name and not spec.useKMS:
            credentials = read_secret_data(
                self._kube_client, secret_name, restore.metadata.namespace
            )
        return new_storage_backend(spec, credentials)

    def read(self, restore: Restore, filename: str) -> CloudSnapBackup:
        """Read and decode a metadata document.

        The document is read on every call; it is never cached.

        Args:
            restore (Restore): The restore pointing at the external storage.
            filename (str): The name of the document under the backup prefix.

        Returns:
            CloudSnapBackup: The decoded document.

        Raises:
            MetadataReadError: If the document cannot be read or decoded.
        """
        namespace = restore.metadata.namespace
        name = restore.metadata.name
        logger.info("Reading %s of restore %s/%s from external storage", filename, namespace, name)

        try:
            backend = self._storage_backend(restore)
            backend.connect(self._timeout)
        except (StorageProviderError, ApiError) as e:
            raise MetadataReadError("NewStorageBackendFailed", str(e)) from e

        try:
            exists = backend.exists(filename, self._timeout)
        except StorageProviderError as e:
            raise MetadataReadError("FileExistedInExternalStorageFailed", str(e)) from e
        if not exists:
            # BR writes the file before reporting success, so its absence is a BR problem.
            raise MetadataReadError("FileNotExists", f"{filename} does not exist")

        try:
            content = backend.read_all(filename, self._timeout)
        except StorageProviderError as e:
            raise MetadataReadError("ReadAllOnExternalStorageFailed", str(e)) from e

        try:
            return CloudSnapBackup.model_validate_json(content)
        except ValidationError as ve:
            raise MetadataReadError("ParseCloudSnapBackupFailed", str(ve)) from ve

    def read_backup_meta(self, restore: Restore) -> CloudSnapBackup:
        """Read the metadata recorded at backup time."""
        return self.read(restore, CLUSTER_BACKUP_META)

    def read_restore_meta(self, restore: Restore) -> CloudSnapBackup:
        """Read the metadata recorded by the volume preparation job."""
        return self.read(restore, CLUSTER_RESTORE_META)
