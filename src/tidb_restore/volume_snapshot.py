# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Volume snapshot restore phases.

A volume snapshot restore is driven across several passes and several jobs.
Progress of the restore lives in its conditions; ownership of the target
cluster lives in the ``tikv-volumes-ready`` annotation, whose value is the
``namespace/name`` of the restore that prepared the TiKV volumes.

* PrepareMetadata: once the volume preparation job reported VolumeComplete,
  recreate the TiKV volumes from the restore metadata and stamp the
  annotation.
* AwaitTiKVRestart: once every TiKV store is up, tag the restored volumes and
  record TiKVComplete.
* Finish: restart TiKV, leave recovery mode, drop the annotation and record
  Complete.
"""

import logging
from typing import Any, Dict

from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.resources.core_v1 import PersistentVolume, Pod
from lightkube.types import PatchType

from config import ManagerConfig
from constants import ANN_TIKV_VOLUMES_READY

from .conditions import (
    RestoreConditionUpdater,
    is_restore_complete,
    is_restore_volume_complete,
    new_condition,
)
from .crds.restore import (
    FederalVolumeRestorePhase,
    Restore,
    RestoreConditionType,
    federal_phase,
    restore_identity,
    restore_mode,
)
from .crds.tidbcluster import TidbCluster, all_tikvs_are_available, tikv_labels
from .errors import ConditionUpdateError, VolumeRestoreError
from .metadata import BackupMetadataReader
from .result import SyncResult
from .snapshotter import Snapshotter, new_snapshotter_for_restore

logger = logging.getLogger(__name__)


class VolumeSnapshotRestorer:
    """Drive the volume snapshot specific phases of a restore."""

    def __init__(
        self,
        kube_client: Client,
        config: ManagerConfig,
        reader: BackupMetadataReader,
        updater: RestoreConditionUpdater,
    ) -> None:
        """Initialize the restorer.

        Args:
            kube_client (Client): The lightkube client used to mutate the target cluster.
            config (ManagerConfig): The manager configuration.
            reader (BackupMetadataReader): The reader of the restore metadata.
            updater (RestoreConditionUpdater): The restore condition ledger.
        """
        self._kube_client = kube_client
        self._config = config
        self._reader = reader
        self._updater = updater

    def _snapshotter(self, restore: Restore) -> Snapshotter:
        return new_snapshotter_for_restore(restore_mode(restore), self._kube_client, self._config)

    def _tikv_selector(self, tc: TidbCluster) -> Dict[str, str]:
        if not tc.metadata or not tc.metadata.name:
            raise VolumeRestoreError("BuildTiKVSelectorFailed", "tidbcluster has no name")
        return tikv_labels(tc)

    def _patch_cluster(self, tc: TidbCluster, patch: Dict[str, Any], reason: str) -> None:
        """Merge patch only the given fields of the target cluster."""
        patch.setdefault("metadata", {})["resourceVersion"] = tc.metadata.resourceVersion
        try:
            self._kube_client.patch(
                TidbCluster,
                tc.metadata.name,
                patch,
                namespace=tc.metadata.namespace,
                patch_type=PatchType.MERGE,
            )
        except ApiError as ae:
            logger.error(
                "Failed to update tidbcluster %s/%s: %s",
                tc.metadata.namespace,
                tc.metadata.name,
                ae,
            )
            raise VolumeRestoreError(
                reason,
                f"failed to update tidbcluster {tc.metadata.namespace}/{tc.metadata.name}: {ae}",
            ) from ae

    def restore(self, restore: Restore, tc: TidbCluster) -> None:
        """Run the phase the restore is in, if it has one to run in this pass.

        Args:
            restore (Restore): The volume snapshot restore.
            tc (TidbCluster): The target cluster; updated in place.

        Raises:
            RestoreManagerError: If a step fails; the error reason names the step.
        """
        if is_restore_complete(restore):
            return

        phase = federal_phase(restore)
        if phase == FederalVolumeRestorePhase.FINISH:
            self._finish(restore, tc)
        elif is_restore_volume_complete(restore) and phase == FederalVolumeRestorePhase.VOLUME:
            self._prepare_metadata(restore, tc)

    def _finish(self, restore: Restore, tc: TidbCluster) -> None:
        identity = restore_identity(restore)
        logger.info("Restore %s: handling the restore-finish phase", identity)
        if not tc.spec.recoveryMode:
            logger.info(
                "Restore %s: recovery mode of tidbcluster %s/%s is off, ignoring restore-finish",
                identity,
                tc.metadata.namespace,
                tc.metadata.name,
            )
            return

        selector = self._tikv_selector(tc)
        try:
            pods = list(
                self._kube_client.list(Pod, namespace=tc.metadata.namespace, labels=selector)
            )
        except ApiError as ae:
            raise VolumeRestoreError("ListTiKVPodsFailed", str(ae)) from ae

        for pod in pods:
            if pod.metadata.deletionTimestamp is not None:
                continue
            logger.info(
                "Restore %s: restarting pod %s/%s",
                identity,
                pod.metadata.namespace,
                pod.metadata.name,
            )
            try:
                self._kube_client.delete(Pod, pod.metadata.name, namespace=pod.metadata.namespace)
            except ApiError as ae:
                raise VolumeRestoreError(
                    "DeleteTiKVPodFailed", f"failed to delete pod {pod.metadata.name}: {ae}"
                ) from ae

        self._patch_cluster(
            tc,
            {
                "metadata": {"annotations": {ANN_TIKV_VOLUMES_READY: None}},
                "spec": {"recoveryMode": False},
            },
            "ClearTCRecoveryMarkFailed",
        )
        tc.spec.recoveryMode = False
        if tc.metadata.annotations:
            tc.metadata.annotations.pop(ANN_TIKV_VOLUMES_READY, None)

        try:
            self._updater.update(restore, new_condition(RestoreConditionType.COMPLETE))
        except ConditionUpdateError as cue:
            raise VolumeRestoreError("UpdateRestoreCompleteFailed", cue.message) from cue

    def _prepare_metadata(self, restore: Restore, tc: TidbCluster) -> None:
        identity = restore_identity(restore)
        logger.info("Restore %s: handling the VolumeComplete phase", identity)

        marker = (tc.metadata.annotations or {}).get(ANN_TIKV_VOLUMES_READY)
        if marker == identity:
            logger.info("Restore %s: TiKV volumes are ready, skipping restore metadata", identity)
            return
        if marker is not None:
            logger.warning(
                "Restore %s: tidbcluster %s/%s has TiKV volumes prepared by restore %s",
                identity,
                tc.metadata.namespace,
                tc.metadata.name,
                marker,
            )

        snapshotter = self._snapshotter(restore)
        csb = self._reader.read_restore_meta(restore)
        snapshotter.prepare_restore_metadata(restore, csb)

        self._patch_cluster(
            tc,
            {"metadata": {"annotations": {ANN_TIKV_VOLUMES_READY: identity}}},
            "AddTCAnnWaitTiKVFailed",
        )
        if tc.metadata.annotations is None:
            tc.metadata.annotations = {}
        tc.metadata.annotations[ANN_TIKV_VOLUMES_READY] = identity
        logger.info("Restore %s: TiKV volumes are ready", identity)

    def await_tikv_restart(self, restore: Restore, tc: TidbCluster) -> SyncResult:
        """Wait for TiKV to run on the restored volumes, then tag the volumes.

        Args:
            restore (Restore): The volume snapshot restore.
            tc (TidbCluster): The target cluster.

        Returns:
            SyncResult: A wait while TiKV stores are not all up, done otherwise.

        Raises:
            RestoreManagerError: If a step fails; the error reason names the step.
        """
        identity = restore_identity(restore)
        if not all_tikvs_are_available(tc):
            return SyncResult.wait(
                f"restore {identity}: waiting for all TiKVs are available in tidbcluster "
                f"{tc.metadata.namespace}/{tc.metadata.name}",
                self._config.requeue_delay,
            )

        selector = self._tikv_selector(tc)
        try:
            pvs = list(self._kube_client.list(PersistentVolume, labels=selector))
        except ApiError as ae:
            raise VolumeRestoreError("ListPVsFailed", str(ae)) from ae

        snapshotter = self._snapshotter(restore)
        snapshotter.add_volume_tags(pvs)
        self._updater.update(restore, new_condition(RestoreConditionType.TIKV_COMPLETE))
        logger.info("Restore %s: tagged %d TiKV volumes", identity, len(pvs))
        return SyncResult.done()
