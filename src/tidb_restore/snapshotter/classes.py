# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Base volume snapshotter class definitions."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.resources.core_v1 import PersistentVolume, PersistentVolumeClaim

from config import ManagerConfig
from k8s_utils import is_conflict

from ..crds.restore import Restore, cluster_namespace, restore_identity
from ..errors import SnapshotterError
from ..metadata import CloudSnapBackup

logger = logging.getLogger(__name__)

BINDING_ANNOTATIONS = (
    "pv.kubernetes.io/bind-completed",
    "pv.kubernetes.io/bound-by-controller",
)


class Snapshotter(ABC):
    """Cloud volume operations needed by a volume snapshot restore."""

    @abstractmethod
    def add_volume_tags(self, pvs: List[PersistentVolume]) -> None:  # pragma: no cover
        """Tag the cloud volumes backing the restored persistent volumes.

        Raises:
            SnapshotterError: If the volumes cannot be tagged.
        """
        ...

    @abstractmethod
    def prepare_restore_metadata(
        self, restore: Restore, csb: CloudSnapBackup
    ) -> None:  # pragma: no cover
        """Recreate the TiKV volumes and claims on top of the restored cloud volumes.

        Raises:
            SnapshotterError: If the volumes or claims cannot be prepared.
        """
        ...


class BaseSnapshotter(Snapshotter):
    """Snapshotter logic shared by the cloud providers.

    Providers only know where a persistent volume stores its cloud volume id
    and how to tag cloud volumes.
    """

    def __init__(self, kube_client: Client, config: ManagerConfig) -> None:
        self._kube_client = kube_client
        self._config = config

    @abstractmethod
    def volume_id(self, pv: PersistentVolume) -> Optional[str]:  # pragma: no cover
        """Return the cloud volume id of the persistent volume."""
        ...

    @abstractmethod
    def set_volume_id(self, pv: PersistentVolume, volume_id: str) -> None:  # pragma: no cover
        """Point the persistent volume at another cloud volume."""
        ...

    @staticmethod
    def volume_id_map(csb: CloudSnapBackup) -> Dict[str, str]:
        """Return the mapping from backed up volume id to restored volume id.

        Raises:
            SnapshotterError: If the metadata has no TiKV volumes or a volume was not restored.
        """
        if csb.tikv is None or not csb.tikv.stores:
            raise SnapshotterError("InvalidRestoreMeta", "restore metadata has no TiKV stores")
        volume_map = {}
        for store in csb.tikv.stores:
            for volume in store.volumes or []:
                if not volume.restore_volume_id:
                    raise SnapshotterError(
                        "InvalidRestoreMeta",
                        f"volume {volume.volume_id} of store {store.store_id} was not restored",
                    )
                volume_map[volume.volume_id] = volume.restore_volume_id
        return volume_map

    def _restored_pvs(
        self, csb: CloudSnapBackup, namespace: str, volume_map: Dict[str, str]
    ) -> List[PersistentVolume]:
        pvs = []
        for data in csb.kubernetes.pvs or []:
            pv = PersistentVolume.from_dict(data)
            old_id = self.volume_id(pv)
            if old_id not in volume_map:
                raise SnapshotterError(
                    "ResetRestoreVolumeFailed",
                    f"volume {old_id} of pv {pv.metadata.name} is missing from restore metadata",
                )
            self.set_volume_id(pv, volume_map[old_id])
            _reset_metadata(pv)
            pv.status = None
            if pv.spec.claimRef is not None:
                pv.spec.claimRef.namespace = namespace
                pv.spec.claimRef.resourceVersion = None
                pv.spec.claimRef.uid = None
            pvs.append(pv)
        return pvs

    @staticmethod
    def _restored_pvcs(csb: CloudSnapBackup, namespace: str) -> List[PersistentVolumeClaim]:
        pvcs = []
        for data in csb.kubernetes.pvcs or []:
            pvc = PersistentVolumeClaim.from_dict(data)
            _reset_metadata(pvc)
            pvc.metadata.namespace = namespace
            pvc.status = None
            pvcs.append(pvc)
        return pvcs

    def _create(self, obj) -> None:
        kind = type(obj).__name__
        try:
            self._kube_client.create(obj)
        except ApiError as ae:
            if is_conflict(ae):
                logger.info("%s %s already exists, skipping", kind, obj.metadata.name)
                return
            logger.error("Failed to create %s %s: %s", kind, obj.metadata.name, ae)
            raise SnapshotterError(
                f"Create{kind}Failed", f"failed to create {kind} {obj.metadata.name}: {ae}"
            ) from ae
        logger.info("Created %s %s", kind, obj.metadata.name)

    def prepare_restore_metadata(self, restore: Restore, csb: CloudSnapBackup) -> None:
        """Recreate the TiKV volumes and claims on top of the restored cloud volumes.

        The volumes and claims recorded at backup time are pointed at the
        restored cloud volumes, stripped of their binding state and created.
        Objects that already exist are left untouched.

        Args:
            restore (Restore): The volume snapshot restore.
            csb (CloudSnapBackup): The restore metadata written by the volume preparation job.

        Raises:
            SnapshotterError: If the volumes or claims cannot be prepared.
        """
        if csb.kubernetes is None:
            raise SnapshotterError(
                "InvalidRestoreMeta", "restore metadata has no kubernetes objects"
            )
        volume_map = self.volume_id_map(csb)
        namespace = cluster_namespace(restore)
        pvs = self._restored_pvs(csb, namespace, volume_map)
        pvcs = self._restored_pvcs(csb, namespace)

        logger.info(
            "Restore %s: creating %d pvs and %d pvcs for the restored volumes",
            restore_identity(restore),
            len(pvs),
            len(pvcs),
        )
        for pv in pvs:
            self._create(pv)
        for pvc in pvcs:
            self._create(pvc)


def _reset_metadata(obj) -> None:
    metadata = obj.metadata
    metadata.resourceVersion = None
    metadata.uid = None
    metadata.creationTimestamp = None
    metadata.managedFields = None
    metadata.selfLink = None
    metadata.ownerReferences = None
    if metadata.annotations:
        for key in BINDING_ANNOTATIONS:
            metadata.annotations.pop(key, None)
