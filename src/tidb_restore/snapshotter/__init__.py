# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Cloud volume snapshotters module."""

from typing import Dict, Type

from lightkube import Client

from config import ManagerConfig
from constants import CloudProvider

from ..crds.restore import RestoreMode
from ..errors import SnapshotterError
from .aws import AWSSnapshotter
from .classes import BaseSnapshotter, Snapshotter
from .gcp import GCPSnapshotter

SNAPSHOTTERS: Dict[CloudProvider, Type[BaseSnapshotter]] = {
    CloudProvider.AWS: AWSSnapshotter,
    CloudProvider.GCP: GCPSnapshotter,
}


def new_snapshotter_for_restore(
    mode: RestoreMode, kube_client: Client, config: ManagerConfig
) -> Snapshotter:
    """Return the snapshotter of the configured cloud provider.

    Raises:
        SnapshotterError: If the restore mode does not use volume snapshots.
    """
    if mode != RestoreMode.VOLUME_SNAPSHOT:
        raise SnapshotterError(
            "UnsupportedSnapshotter", f"restore mode {mode.value} does not use volume snapshots"
        )
    return SNAPSHOTTERS[config.volume_snapshot_provider](kube_client, config)


__all__ = [
    "Snapshotter",
    "BaseSnapshotter",
    "AWSSnapshotter",
    "GCPSnapshotter",
    "new_snapshotter_for_restore",
]
