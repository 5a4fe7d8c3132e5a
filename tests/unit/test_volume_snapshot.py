# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

from unittest.mock import MagicMock, patch

import pytest
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.core_v1 import PersistentVolume, Pod
from lightkube.types import PatchType

from config import ManagerConfig
from tidb_restore.conditions import RestoreConditionUpdater
from tidb_restore.crds import Restore, TidbCluster
from tidb_restore.crds.restore import restore_conditions
from tidb_restore.errors import VolumeRestoreError
from tidb_restore.volume_snapshot import VolumeSnapshotRestorer

ANN_READY = "tidb.pingcap.com/tikv-volumes-ready"
TIKV_SELECTOR = {
    "app.kubernetes.io/name": "tidb-cluster",
    "app.kubernetes.io/managed-by": "tidb-operator",
    "app.kubernetes.io/instance": "basic",
    "app.kubernetes.io/component": "tikv",
}


def volume_restore(make_restore, kube_objects, phase, conditions):
    restore = make_restore(
        spec={
            "br": {"cluster": "basic"},
            "mode": "volume-snapshot",
            "federalVolumeRestorePhase": phase,
            "s3": {"bucket": "backups"},
        },
        conditions=conditions,
    )
    kube_objects[(Restore, restore.metadata.name)] = restore
    return restore


@pytest.fixture()
def reader(restore_meta):
    reader = MagicMock()
    reader.read_restore_meta.return_value = restore_meta
    return reader


@pytest.fixture()
def restorer(mock_lightkube_client, reader):
    return VolumeSnapshotRestorer(
        mock_lightkube_client,
        ManagerConfig(requeue_delay=5),
        reader,
        RestoreConditionUpdater(mock_lightkube_client),
    )


def test_restore_complete_is_noop(restorer, make_restore, make_tidbcluster, kube_objects, reader):
    """Check nothing runs once the restore is complete."""
    restore = volume_restore(
        make_restore, kube_objects, "restore-finish", ["VolumeComplete", "Complete"]
    )
    tc = make_tidbcluster(recovery_mode=True)

    restorer.restore(restore, tc)

    restorer._kube_client.list.assert_not_called()
    restorer._kube_client.patch.assert_not_called()
    reader.read_restore_meta.assert_not_called()


def test_finish_recovery_mode_off(restorer, make_restore, make_tidbcluster, kube_objects):
    """Check the finish phase is a no-op when recovery mode is already off."""
    restore = volume_restore(make_restore, kube_objects, "restore-finish", ["TiKVComplete"])
    tc = make_tidbcluster(recovery_mode=False)

    restorer.restore(restore, tc)

    restorer._kube_client.list.assert_not_called()
    restorer._kube_client.delete.assert_not_called()
    restorer._kube_client.patch.assert_not_called()
    assert "Complete" not in restore_conditions(restore)


def test_finish(restorer, make_restore, make_tidbcluster, kube_objects, tidbcluster_patches):
    """Check the finish phase restarts TiKV, leaves recovery mode and completes the restore."""
    restore = volume_restore(make_restore, kube_objects, "restore-finish", ["TiKVComplete"])
    tc = make_tidbcluster(recovery_mode=True, annotations={ANN_READY: "tidb/demo-restore"})
    client = restorer._kube_client
    client.list.return_value = [
        Pod(metadata=ObjectMeta(name="basic-tikv-0", namespace="tidb")),
        Pod(
            metadata=ObjectMeta(
                name="basic-tikv-1", namespace="tidb", deletionTimestamp="2025-01-01T00:00:00Z"
            )
        ),
    ]

    restorer.restore(restore, tc)

    client.list.assert_called_once_with(Pod, namespace="tidb", labels=TIKV_SELECTOR)
    client.delete.assert_called_once_with(Pod, "basic-tikv-0", namespace="tidb")
    assert tidbcluster_patches() == [
        {
            "metadata": {"annotations": {ANN_READY: None}, "resourceVersion": "4242"},
            "spec": {"recoveryMode": False},
        }
    ]
    client.patch.assert_any_call(
        TidbCluster,
        "basic",
        tidbcluster_patches()[0],
        namespace="tidb",
        patch_type=PatchType.MERGE,
    )
    client.replace.assert_not_called()
    assert tc.spec.recoveryMode is False
    assert ANN_READY not in tc.metadata.annotations
    assert restore_conditions(restore)["Complete"].status == "True"
    assert restore.status.phase == "Complete"


@pytest.mark.parametrize(
    "method,reason",
    [
        ("list", "ListTiKVPodsFailed"),
        ("delete", "DeleteTiKVPodFailed"),
        ("patch", "ClearTCRecoveryMarkFailed"),
    ],
)
def test_finish_api_error(
    restorer, make_restore, make_tidbcluster, kube_objects, make_api_error, method, reason
):
    """Check failures of the finish phase name the failing step."""
    restore = volume_restore(make_restore, kube_objects, "restore-finish", ["TiKVComplete"])
    client = restorer._kube_client
    client.list.return_value = [Pod(metadata=ObjectMeta(name="basic-tikv-0", namespace="tidb"))]
    getattr(client, method).side_effect = make_api_error(500, "internal error")

    with pytest.raises(VolumeRestoreError) as vre:
        restorer.restore(restore, make_tidbcluster(recovery_mode=True))
    assert vre.value.reason == reason
    assert "Complete" not in restore_conditions(restore)


def test_prepare_metadata(
    restorer, make_restore, make_tidbcluster, kube_objects, reader, tidbcluster_patches
):
    """Check the volumes are recreated from the restore metadata and the cluster is marked."""
    restore = volume_restore(make_restore, kube_objects, "restore-volume", ["VolumeComplete"])
    tc = make_tidbcluster(recovery_mode=True)

    restorer.restore(restore, tc)

    reader.read_restore_meta.assert_called_once_with(restore)
    pvs = [obj for (kind, _), obj in kube_objects.items() if kind is PersistentVolume]
    assert sorted(pv.spec.csi.volumeHandle for pv in pvs) == ["vol-new-0", "vol-new-1"]
    assert tc.metadata.annotations[ANN_READY] == "tidb/demo-restore"
    assert tidbcluster_patches() == [
        {"metadata": {"annotations": {ANN_READY: "tidb/demo-restore"}, "resourceVersion": "4242"}}
    ]
    restorer._kube_client.replace.assert_not_called()


def test_prepare_metadata_not_volume_complete(
    restorer, make_restore, make_tidbcluster, kube_objects, reader
):
    """Check nothing is prepared before the volume preparation job completed."""
    restore = volume_restore(make_restore, kube_objects, "restore-volume", ["Scheduled"])

    restorer.restore(restore, make_tidbcluster(recovery_mode=True))

    reader.read_restore_meta.assert_not_called()
    restorer._kube_client.patch.assert_not_called()


def test_prepare_metadata_already_done(
    restorer, make_restore, make_tidbcluster, kube_objects, reader
):
    """Check the volumes are not prepared twice by the same restore."""
    restore = volume_restore(make_restore, kube_objects, "restore-volume", ["VolumeComplete"])
    tc = make_tidbcluster(recovery_mode=True, annotations={ANN_READY: "tidb/demo-restore"})

    restorer.restore(restore, tc)

    reader.read_restore_meta.assert_not_called()
    restorer._kube_client.create.assert_not_called()
    restorer._kube_client.patch.assert_not_called()


def test_prepare_metadata_other_restore(
    restorer, make_restore, make_tidbcluster, kube_objects, reader
):
    """Check a marker left by another restore does not block the preparation."""
    restore = volume_restore(make_restore, kube_objects, "restore-volume", ["VolumeComplete"])
    tc = make_tidbcluster(recovery_mode=True, annotations={ANN_READY: "tidb/older-restore"})

    restorer.restore(restore, tc)

    reader.read_restore_meta.assert_called_once()
    assert tc.metadata.annotations[ANN_READY] == "tidb/demo-restore"


def test_prepare_metadata_patch_failure(
    restorer, make_restore, make_tidbcluster, kube_objects, make_api_error
):
    """Check a failure to mark the cluster is reported."""
    restore = volume_restore(make_restore, kube_objects, "restore-volume", ["VolumeComplete"])
    restorer._kube_client.patch.side_effect = make_api_error(409, "conflict")

    with pytest.raises(VolumeRestoreError) as vre:
        restorer.restore(restore, make_tidbcluster(recovery_mode=True))
    assert vre.value.reason == "AddTCAnnWaitTiKVFailed"


def test_await_tikv_restart_waits(restorer, make_restore, make_tidbcluster, kube_objects):
    """Check the restorer waits until every TiKV store is up."""
    restore = volume_restore(make_restore, kube_objects, "restore-volume", ["VolumeComplete"])

    result = restorer.await_tikv_restart(restore, make_tidbcluster(tikv_ready=False))

    assert result.is_waiting
    assert result.requeue_after == 5
    assert "waiting for all TiKVs are available" in result.reason
    restorer._kube_client.list.assert_not_called()
    assert "TiKVComplete" not in restore_conditions(restore)


@patch("tidb_restore.snapshotter.aws.boto3")
def test_await_tikv_restart_tags_volumes(
    mock_boto3, restorer, make_restore, make_tidbcluster, kube_objects
):
    """Check the restored volumes are tagged once TiKV is up."""
    restore = volume_restore(make_restore, kube_objects, "restore-volume", ["VolumeComplete"])
    pv = PersistentVolume.from_dict(
        {
            "metadata": {"name": "pv-tikv-0"},
            "spec": {"csi": {"driver": "ebs.csi.aws.com", "volumeHandle": "vol-new-0"}},
        }
    )
    restorer._kube_client.list.return_value = [pv]

    result = restorer.await_tikv_restart(restore, make_tidbcluster())

    assert not result.is_waiting
    restorer._kube_client.list.assert_called_once_with(PersistentVolume, labels=TIKV_SELECTOR)
    mock_boto3.client.return_value.create_tags.assert_called_once()
    assert restore_conditions(restore)["TiKVComplete"].status == "True"


def test_await_tikv_restart_list_failure(
    restorer, make_restore, make_tidbcluster, kube_objects, make_api_error
):
    """Check a failure to list the TiKV volumes is reported."""
    restore = volume_restore(make_restore, kube_objects, "restore-volume", ["VolumeComplete"])
    restorer._kube_client.list.side_effect = make_api_error(500, "internal error")

    with pytest.raises(VolumeRestoreError) as vre:
        restorer.await_tikv_restart(restore, make_tidbcluster())
    assert vre.value.reason == "ListPVsFailed"


def test_tikv_selector_without_cluster_name(restorer, make_restore, kube_objects):
    """Check the TiKV selector needs the cluster name."""
    restore = volume_restore(make_restore, kube_objects, "restore-volume", ["VolumeComplete"])
    tc = TidbCluster.from_dict({"metadata": {"namespace": "tidb"}, "spec": {"tikv": {}}})

    with pytest.raises(VolumeRestoreError) as vre:
        restorer.await_tikv_restart(restore, tc)
    assert vre.value.reason == "BuildTiKVSelectorFailed"
