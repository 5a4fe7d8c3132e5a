# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""AWS EBS volume snapshotter."""

import logging
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from lightkube.resources.core_v1 import PersistentVolume

from ..errors import SnapshotterError
from .classes import BaseSnapshotter

logger = logging.getLogger(__name__)


def volume_tags(pv: PersistentVolume) -> Dict[str, str]:
    """Return the tags the EBS CSI driver puts on the volume of a persistent volume."""
    tags = {
        "CSIVolumeName": pv.metadata.name,
        "kubernetes.io/created-for/pv/name": pv.metadata.name,
    }
    claim = pv.spec.claimRef if pv.spec else None
    if claim is not None:
        tags["kubernetes.io/created-for/pvc/name"] = claim.name
        tags["kubernetes.io/created-for/pvc/namespace"] = claim.namespace
    return tags


class AWSSnapshotter(BaseSnapshotter):
    """Snapshotter for volumes restored from EBS snapshots."""

    def volume_id(self, pv: PersistentVolume) -> Optional[str]:
        """Return the EBS volume id of the persistent volume."""
        if pv.spec.csi is not None:
            return pv.spec.csi.volumeHandle
        if pv.spec.awsElasticBlockStore is not None:
            return pv.spec.awsElasticBlockStore.volumeID
        return None

    def set_volume_id(self, pv: PersistentVolume, volume_id: str) -> None:
        """Point the persistent volume at another EBS volume."""
        if pv.spec.csi is not None:
            pv.spec.csi.volumeHandle = volume_id
        elif pv.spec.awsElasticBlockStore is not None:
            pv.spec.awsElasticBlockStore.volumeID = volume_id
        else:
            raise SnapshotterError(
                "ResetRestoreVolumeFailed", f"pv {pv.metadata.name} is not backed by EBS"
            )

    def add_volume_tags(self, pvs: List[PersistentVolume]) -> None:
        """Tag the EBS volumes backing the restored persistent volumes.

        Raises:
            SnapshotterError: If a volume cannot be tagged.
        """
        client = boto3.client("ec2", region_name=self._config.cloud_region)
        for pv in pvs:
            volume_id = self.volume_id(pv)
            if not volume_id:
                logger.warning("pv %s is not backed by EBS, skipping tags", pv.metadata.name)
                continue
            tags = [{"Key": key, "Value": value} for key, value in volume_tags(pv).items()]
            try:
                client.create_tags(Resources=[volume_id], Tags=tags)
            except (BotoCoreError, ClientError) as e:
                logger.error(
                    "Failed to tag volume %s of pv %s: %s", volume_id, pv.metadata.name, e
                )
                raise SnapshotterError(
                    "AddVolumeTagFailed", f"failed to tag volume {volume_id}: {e}"
                ) from e
            logger.debug("Tagged volume %s of pv %s", volume_id, pv.metadata.name)
