# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

from unittest.mock import patch

import pytest
from lightkube.resources.batch_v1 import Job
from lightkube.resources.core_v1 import PersistentVolume, PersistentVolumeClaim, Secret

from config import ManagerConfig
from tidb_restore import (
    MetadataReadError,
    PVCTooSmallError,
    RestoreInvalidError,
    RestoreJobCreateError,
    RestoreManager,
    RestoreManagerError,
    RestoreUpdateStatus,
    new_condition,
)
from tidb_restore.crds import RestoreConditionType, TidbCluster
from tidb_restore.crds.restore import restore_conditions
from tidb_restore.metadata import BackupMetadataReader

ANN_READY = "tidb.pingcap.com/tikv-volumes-ready"


@pytest.fixture()
def manager(mock_lightkube_client, kube_objects, monkeypatch):
    monkeypatch.delenv("TZ", raising=False)
    for name in ("tidb-secret", "s3-secret"):
        kube_objects[(Secret, name)] = Secret(data={})
    return RestoreManager(mock_lightkube_client, ManagerConfig(requeue_delay=10))


@pytest.fixture()
def metadata(make_backup_meta, restore_meta):
    """Serve the backup and restore metadata without external storage."""
    with (
        patch.object(
            BackupMetadataReader, "read_backup_meta", return_value=make_backup_meta()
        ) as backup,
        patch.object(BackupMetadataReader, "read_restore_meta", return_value=restore_meta) as rm,
    ):
        yield backup, rm


@pytest.fixture()
def mock_boto3():
    with patch("tidb_restore.snapshotter.aws.boto3") as mock_boto3:
        yield mock_boto3


def stored(kube_objects, obj):
    kube_objects[(type(obj), obj.metadata.name)] = obj
    return obj


def volume_restore(make_restore, phase="restore-volume", conditions=None):
    return make_restore(
        spec={
            "br": {"cluster": "basic"},
            "mode": "volume-snapshot",
            "federalVolumeRestorePhase": phase,
            "s3": {"bucket": "backups", "secretName": "s3-secret"},
        },
        conditions=conditions,
    )


def condition_types(restore):
    return {t for t, c in restore_conditions(restore).items() if c.status == "True"}


def test_sync_simple_restore(manager, make_restore, kube_objects, mock_lightkube_client):
    """Check a simple restore gets its claim, its import job and the Scheduled condition."""
    restore = stored(kube_objects, make_restore())

    result = manager.sync(restore)

    assert not result.is_waiting
    pvc = kube_objects[(PersistentVolumeClaim, "restore-pvc-demo-restore")]
    assert pvc.spec.resources.requests == {"storage": "100Gi"}
    job = kube_objects[(Job, "restore-demo-restore")]
    assert job.spec.template.spec.containers[0].args[0] == "import"
    assert restore.status.phase == "Scheduled"
    assert condition_types(restore) == {"Scheduled"}

    # A second pass finds the job and does nothing.
    create_calls = mock_lightkube_client.create.call_count
    patch_calls = mock_lightkube_client.patch.call_count
    assert not manager.sync(restore).is_waiting
    assert mock_lightkube_client.create.call_count == create_calls
    assert mock_lightkube_client.patch.call_count == patch_calls


def test_sync_complete_restore(manager, make_restore, kube_objects, mock_lightkube_client):
    """Check a complete restore is left untouched."""
    restore = stored(kube_objects, make_restore(conditions=["Scheduled", "Complete"]))
    stored(kube_objects, Job.from_dict({"metadata": {"name": "restore-demo-restore"}}))

    assert not manager.sync(restore).is_waiting
    mock_lightkube_client.create.assert_not_called()
    mock_lightkube_client.patch.assert_not_called()


def test_sync_invalid_spec(manager, make_restore, kube_objects, mock_lightkube_client):
    """Check an invalid spec records Invalid and must not be retried."""
    restore = stored(kube_objects, make_restore(spec={"s3": {"bucket": "backups"}}))

    with pytest.raises(RestoreInvalidError) as rie:
        manager.sync(restore)
    assert rie.value.reason == "InvalidSpec"
    invalid = restore_conditions(restore)["Invalid"]
    assert invalid.reason == "InvalidSpec"
    assert "missing cluster config" in invalid.message
    mock_lightkube_client.create.assert_not_called()


def test_sync_cluster_not_found(manager, make_restore, kube_objects, mock_lightkube_client):
    """Check a missing target cluster makes the restore invalid."""
    restore = stored(kube_objects, volume_restore(make_restore))

    with pytest.raises(RestoreInvalidError):
        manager.sync(restore)
    invalid = restore_conditions(restore)["Invalid"]
    assert invalid.reason == "failed to fetch tidbcluster tidb/basic"
    mock_lightkube_client.create.assert_not_called()


def test_sync_cluster_fetch_failure(
    manager, make_restore, kube_objects, mock_lightkube_client, make_api_error
):
    """Check a transient failure to fetch the target cluster can be retried."""
    restore = stored(kube_objects, volume_restore(make_restore))
    get = mock_lightkube_client.get.side_effect

    def failing_get(resource, name, namespace=None):
        if resource is TidbCluster:
            raise make_api_error(500, "internal error")
        return get(resource, name, namespace=namespace)

    mock_lightkube_client.get.side_effect = failing_get

    with pytest.raises(RestoreManagerError) as rme:
        manager.sync(restore)
    assert not isinstance(rme.value, RestoreInvalidError)
    conditions = restore_conditions(restore)
    assert conditions["RetryFailed"].reason == "failed to fetch tidbcluster tidb/basic"
    assert "Invalid" not in conditions


def test_sync_br_without_cluster(manager, make_restore, kube_objects, mock_lightkube_client):
    """Check a BR restore naming no cluster is invalid without looking a cluster up."""
    restore = stored(kube_objects, make_restore(spec={"br": {}, "s3": {"bucket": "backups"}}))
    get = mock_lightkube_client.get.side_effect

    def strict_get(resource, name, namespace=None):
        if name is None:
            raise ValueError("resource name not defined")
        return get(resource, name, namespace=namespace)

    mock_lightkube_client.get.side_effect = strict_get

    with pytest.raises(RestoreInvalidError) as rie:
        manager.sync(restore)
    assert rie.value.reason == "InvalidSpec"
    invalid = restore_conditions(restore)["Invalid"]
    assert "cluster should be configured for BR" in invalid.message
    mock_lightkube_client.create.assert_not_called()


def test_sync_volume_snapshot_first_job(
    manager, make_restore, make_tidbcluster, kube_objects, metadata
):
    """Check the first pass of a volume snapshot restore creates the volume preparation job."""
    restore = stored(kube_objects, volume_restore(make_restore))
    stored(kube_objects, make_tidbcluster(recovery_mode=True))

    assert not manager.sync(restore).is_waiting

    job = kube_objects[(Job, "restore-volume-demo-restore")]
    assert "--prepare" in job.spec.template.spec.containers[0].args
    assert condition_types(restore) == {"Scheduled"}
    backup, restore_meta = metadata
    backup.assert_called_once()
    restore_meta.assert_not_called()


def test_sync_volume_snapshot_prepare_metadata(
    manager,
    make_restore,
    make_tidbcluster,
    kube_objects,
    mock_lightkube_client,
    metadata,
    tidbcluster_patches,
):
    """Check the pass after VolumeComplete recreates the volumes and waits for TiKV."""
    restore = stored(
        kube_objects, volume_restore(make_restore, conditions=["Scheduled", "VolumeComplete"])
    )
    tc = stored(kube_objects, make_tidbcluster(recovery_mode=True, tikv_ready=False))

    result = manager.sync(restore)

    assert result.is_waiting
    assert result.requeue_after == 10
    assert tc.metadata.annotations[ANN_READY] == "tidb/demo-restore"
    assert tidbcluster_patches() == [
        {"metadata": {"annotations": {ANN_READY: "tidb/demo-restore"}, "resourceVersion": "4242"}}
    ]
    pvs = {name: obj for (kind, name), obj in kube_objects.items() if kind is PersistentVolume}
    assert pvs["pv-tikv-0"].spec.csi.volumeHandle == "vol-new-0"
    assert pvs["pv-tikv-0"].spec.claimRef.namespace == "tidb"
    assert (Job, "restore-data-demo-restore") not in kube_objects
    assert condition_types(restore) == {"Scheduled", "VolumeComplete"}


def test_sync_volume_snapshot_tikv_restarted(
    manager, make_restore, make_tidbcluster, kube_objects, mock_boto3, metadata
):
    """Check TiKVComplete is recorded once TiKV runs on the restored volumes."""
    restore = stored(
        kube_objects, volume_restore(make_restore, conditions=["Scheduled", "VolumeComplete"])
    )
    stored(
        kube_objects,
        make_tidbcluster(recovery_mode=True, annotations={ANN_READY: "tidb/demo-restore"}),
    )

    assert not manager.sync(restore).is_waiting

    assert "TiKVComplete" in condition_types(restore)
    mock_boto3.client.assert_called_once_with("ec2", region_name=None)
    _, restore_meta = metadata
    restore_meta.assert_not_called()


def test_sync_volume_snapshot_data_job(
    manager,
    make_restore,
    make_tidbcluster,
    kube_objects,
    mock_lightkube_client,
    metadata,
    tidbcluster_patches,
):
    """Check the data restore job is created once TiKV is complete."""
    restore = stored(
        kube_objects,
        volume_restore(make_restore, conditions=["Scheduled", "VolumeComplete", "TiKVComplete"]),
    )
    stored(
        kube_objects,
        make_tidbcluster(recovery_mode=True, annotations={ANN_READY: "tidb/demo-restore"}),
    )

    assert not manager.sync(restore).is_waiting

    job = kube_objects[(Job, "restore-data-demo-restore")]
    assert "--prepare" not in job.spec.template.spec.containers[0].args
    assert tidbcluster_patches() == []


def test_sync_volume_snapshot_pd_not_ready(
    manager, make_restore, make_tidbcluster, kube_objects, metadata
):
    """Check the restore waits for PD."""
    restore = stored(kube_objects, volume_restore(make_restore))
    stored(kube_objects, make_tidbcluster(recovery_mode=True, pd_ready=False))

    result = manager.sync(restore)

    assert result.is_waiting
    assert "waiting for all PD members are ready" in result.reason
    assert (Job, "restore-volume-demo-restore") not in kube_objects


def test_sync_volume_snapshot_finish(
    manager,
    make_restore,
    make_tidbcluster,
    kube_objects,
    mock_lightkube_client,
    metadata,
    tidbcluster_patches,
):
    """Check the finish phase completes the restore and leaves recovery mode."""
    restore = stored(
        kube_objects,
        volume_restore(
            make_restore,
            phase="restore-finish",
            conditions=["Scheduled", "VolumeComplete", "TiKVComplete"],
        ),
    )
    tc = stored(
        kube_objects,
        make_tidbcluster(recovery_mode=True, annotations={ANN_READY: "tidb/demo-restore"}),
    )

    assert not manager.sync(restore).is_waiting

    assert tc.spec.recoveryMode is False
    assert ANN_READY not in tc.metadata.annotations
    assert tidbcluster_patches() == [
        {
            "metadata": {"annotations": {ANN_READY: None}, "resourceVersion": "4242"},
            "spec": {"recoveryMode": False},
        }
    ]
    assert restore.status.phase == "Complete"
    mock_lightkube_client.create.assert_not_called()


def test_sync_volume_snapshot_finish_recovery_off(
    manager,
    make_restore,
    make_tidbcluster,
    kube_objects,
    mock_lightkube_client,
    metadata,
    tidbcluster_patches,
):
    """Check the finish phase waits for completion when recovery mode is already off."""
    restore = stored(
        kube_objects,
        volume_restore(
            make_restore,
            phase="restore-finish",
            conditions=["Scheduled", "VolumeComplete", "TiKVComplete"],
        ),
    )
    stored(kube_objects, make_tidbcluster(recovery_mode=False))

    result = manager.sync(restore)

    assert result.is_waiting
    assert "waiting for restore status complete" in result.reason
    assert tidbcluster_patches() == []
    mock_lightkube_client.create.assert_not_called()
    assert "Complete" not in condition_types(restore)


def test_sync_volume_snapshot_mismatch(
    manager, make_restore, make_tidbcluster, kube_objects, mock_lightkube_client, metadata
):
    """Check a target cluster not matching the backup makes the restore invalid."""
    restore = stored(kube_objects, volume_restore(make_restore))
    stored(kube_objects, make_tidbcluster(tikv_replicas=5, recovery_mode=True))

    with pytest.raises(RestoreInvalidError):
        manager.sync(restore)
    assert restore_conditions(restore)["Invalid"].message.endswith("tikv replica mismatched")
    mock_lightkube_client.create.assert_not_called()


def test_sync_volume_snapshot_metadata_failure(
    manager, make_restore, make_tidbcluster, kube_objects, metadata
):
    """Check a failure to read the backup metadata can be retried."""
    restore = stored(kube_objects, volume_restore(make_restore))
    stored(kube_objects, make_tidbcluster(recovery_mode=True))
    backup, _ = metadata
    backup.side_effect = MetadataReadError("FileNotExists", "backupmeta does not exist")

    with pytest.raises(MetadataReadError):
        manager.sync(restore)
    conditions = restore_conditions(restore)
    assert conditions["RetryFailed"].reason == "FileNotExists"
    assert "Invalid" not in conditions


def test_sync_pvc_too_small(manager, make_restore, kube_objects, mock_lightkube_client):
    """Check an existing claim smaller than requested blocks the restore."""
    restore = stored(kube_objects, make_restore())
    restore.spec.storageSize = "10Gi"
    stored(
        kube_objects,
        PersistentVolumeClaim.from_dict(
            {
                "metadata": {"name": "restore-pvc-demo-restore"},
                "spec": {"resources": {"requests": {"storage": "5Gi"}}},
            }
        ),
    )

    with pytest.raises(PVCTooSmallError):
        manager.sync(restore)
    assert restore_conditions(restore)["Invalid"].reason == "PVCStorageSizeTooSmall"
    assert "RetryFailed" not in restore_conditions(restore)
    mock_lightkube_client.create.assert_not_called()


def test_sync_job_create_failure(
    manager, make_restore, kube_objects, mock_lightkube_client, make_api_error
):
    """Check a failure to create the job is recorded and can be retried."""
    restore = stored(kube_objects, make_restore())
    create = mock_lightkube_client.create.side_effect

    def failing_create(obj, *args, **kwargs):
        if isinstance(obj, Job):
            raise make_api_error(500, "internal error")
        return create(obj, *args, **kwargs)

    mock_lightkube_client.create.side_effect = failing_create

    with pytest.raises(RestoreJobCreateError) as rjce:
        manager.sync(restore)
    assert rjce.value.reason == "CreateRestoreJobFailed"
    assert restore_conditions(restore)["RetryFailed"].reason == "CreateRestoreJobFailed"
    assert "Scheduled" not in condition_types(restore)


def test_sync_job_lookup_failure(
    manager, make_restore, kube_objects, mock_lightkube_client, make_api_error
):
    """Check a failure to look the job up is passed through."""
    restore = stored(kube_objects, make_restore())
    get = mock_lightkube_client.get.side_effect

    def failing_get(resource, name, namespace=None):
        if resource is Job:
            raise make_api_error(500, "internal error")
        return get(resource, name, namespace=namespace)

    mock_lightkube_client.get.side_effect = failing_get

    with pytest.raises(RestoreManagerError) as rme:
        manager.sync(restore)
    assert rme.value.reason == "GetRestoreJobFailed"


def test_update_condition(manager, make_restore, kube_objects):
    """Check conditions and status fields are recorded through the manager."""
    restore = stored(kube_objects, make_restore(conditions=["Scheduled"]))

    manager.update_condition(
        restore,
        new_condition(RestoreConditionType.RUNNING),
        RestoreUpdateStatus(time_started="2025-01-01T00:00:00Z"),
    )

    assert restore.status.phase == "Running"
    assert restore.status.timeStarted == "2025-01-01T00:00:00Z"
    assert condition_types(restore) == {"Scheduled", "Running"}
