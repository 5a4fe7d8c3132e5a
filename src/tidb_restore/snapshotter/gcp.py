# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""GCP persistent disk volume snapshotter."""

import logging
from typing import List, Optional

from lightkube.resources.core_v1 import PersistentVolume

from ..errors import SnapshotterError
from .classes import BaseSnapshotter

logger = logging.getLogger(__name__)


class GCPSnapshotter(BaseSnapshotter):
    """Snapshotter for volumes restored from persistent disk snapshots.

    CSI volume handles have the form ``projects/<project>/zones/<zone>/disks/<disk>``
    while the restore metadata only records disk names.
    """

    def volume_id(self, pv: PersistentVolume) -> Optional[str]:
        """Return the disk name of the persistent volume."""
        if pv.spec.csi is not None:
            return pv.spec.csi.volumeHandle.rsplit("/", 1)[-1]
        if pv.spec.gcePersistentDisk is not None:
            return pv.spec.gcePersistentDisk.pdName
        return None

    def set_volume_id(self, pv: PersistentVolume, volume_id: str) -> None:
        """Point the persistent volume at another disk."""
        if pv.spec.csi is not None:
            prefix, sep, _ = pv.spec.csi.volumeHandle.rpartition("/")
            pv.spec.csi.volumeHandle = f"{prefix}{sep}{volume_id}"
        elif pv.spec.gcePersistentDisk is not None:
            pv.spec.gcePersistentDisk.pdName = volume_id
        else:
            raise SnapshotterError(
                "ResetRestoreVolumeFailed", f"pv {pv.metadata.name} is not backed by a GCP disk"
            )

    def add_volume_tags(self, pvs: List[PersistentVolume]) -> None:
        """Disks restored from snapshots keep their labels; nothing to tag."""
        logger.debug("Skipping volume tags for %d GCP disks", len(pvs))
