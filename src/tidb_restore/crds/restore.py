# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Subset of the TiDB Operator Restore CRD model.

Reference: https://docs.pingcap.com/tidb-in-kubernetes/stable/backup-restore-cr
"""

from enum import Enum
from typing import ClassVar, Dict, List, Optional

from lightkube.codecs import resource_registry
from lightkube.core import resource as res
from lightkube.core.schema import DictMixin, dataclass
from lightkube.models import core_v1, meta_v1

from constants import (
    LABEL_COMPONENT,
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    LABEL_NAME,
    LABEL_RESTORE,
    LABEL_VALUE_RESTORE,
    LABEL_VALUE_RESTORE_OPERATOR,
)


class RestoreMode(str, Enum):
    """Restore mode enum."""

    SNAPSHOT = "snapshot"
    PITR = "pitr"
    VOLUME_SNAPSHOT = "volume-snapshot"


class FederalVolumeRestorePhase(str, Enum):
    """Phase marker of a multi-stage volume snapshot restore."""

    VOLUME = "restore-volume"
    FINISH = "restore-finish"


class RestoreConditionType(str, Enum):
    """Restore condition type enum."""

    SCHEDULED = "Scheduled"
    RUNNING = "Running"
    VOLUME_COMPLETE = "VolumeComplete"
    TIKV_COMPLETE = "TiKVComplete"
    COMPLETE = "Complete"
    FAILED = "Failed"
    RETRY_FAILED = "RetryFailed"
    INVALID = "Invalid"


@dataclass
class TiDBAccessConfig(DictMixin):
    """Connection settings of the TiDB cluster used by the import path."""

    host: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    secretName: Optional[str] = None
    tlsClientSecretName: Optional[str] = None


@dataclass
class BRConfig(DictMixin):
    """BR settings linking a restore to a target TidbCluster."""

    cluster: Optional[str] = None
    clusterNamespace: Optional[str] = None
    db: Optional[str] = None
    table: Optional[str] = None
    logLevel: Optional[str] = None
    statusAddr: Optional[str] = None
    concurrency: Optional[int] = None
    rateLimit: Optional[int] = None
    checksum: Optional[bool] = None
    sendCredToTikv: Optional[bool] = None
    options: Optional[List[str]] = None


@dataclass
class S3StorageProviderModel(DictMixin):
    """S3 compatible storage provider."""

    provider: Optional[str] = None
    region: Optional[str] = None
    path: Optional[str] = None
    bucket: Optional[str] = None
    endpoint: Optional[str] = None
    storageClass: Optional[str] = None
    acl: Optional[str] = None
    secretName: Optional[str] = None
    prefix: Optional[str] = None
    sse: Optional[str] = None
    options: Optional[List[str]] = None


@dataclass
class GcsStorageProviderModel(DictMixin):
    """Google Cloud Storage provider."""

    projectId: Optional[str] = None
    location: Optional[str] = None
    path: Optional[str] = None
    bucket: Optional[str] = None
    storageClass: Optional[str] = None
    objectAcl: Optional[str] = None
    bucketAcl: Optional[str] = None
    secretName: Optional[str] = None
    prefix: Optional[str] = None


@dataclass
class AzblobStorageProviderModel(DictMixin):
    """Azure Blob Storage provider."""

    path: Optional[str] = None
    container: Optional[str] = None
    accessTier: Optional[str] = None
    secretName: Optional[str] = None
    prefix: Optional[str] = None
    storageAccount: Optional[str] = None
    sasToken: Optional[str] = None


@dataclass
class LocalStorageProviderModel(DictMixin):
    """Storage provider backed by a volume mounted into the job."""

    volume: Optional[core_v1.Volume] = None
    volumeMount: Optional[core_v1.VolumeMount] = None
    prefix: Optional[str] = None


@dataclass
class RestoreSpecModel(DictMixin):
    """Restore specification model."""

    to: Optional[TiDBAccessConfig] = None
    br: Optional[BRConfig] = None
    mode: Optional[str] = None
    federalVolumeRestorePhase: Optional[str] = None
    pitrRestoredTs: Optional[str] = None
    volumeAZ: Optional[str] = None
    toolImage: Optional[str] = None
    storageSize: Optional[str] = None
    storageClassName: Optional[str] = None
    serviceAccount: Optional[str] = None
    useKMS: Optional[bool] = None
    resources: Optional[core_v1.ResourceRequirements] = None
    tolerations: Optional[List[core_v1.Toleration]] = None
    affinity: Optional[core_v1.Affinity] = None
    imagePullSecrets: Optional[List[core_v1.LocalObjectReference]] = None
    priorityClassName: Optional[str] = None
    podSecurityContext: Optional[core_v1.PodSecurityContext] = None
    env: Optional[List[core_v1.EnvVar]] = None
    s3: Optional[S3StorageProviderModel] = None
    gcs: Optional[GcsStorageProviderModel] = None
    azblob: Optional[AzblobStorageProviderModel] = None
    local: Optional[LocalStorageProviderModel] = None


@dataclass
class RestoreCondition(DictMixin):
    """Restore condition model."""

    type: str
    status: str
    reason: Optional[str] = None
    message: Optional[str] = None
    lastTransitionTime: Optional[str] = None


@dataclass
class RestoreStatusModel(DictMixin):
    """Restore status model."""

    phase: Optional[str] = None
    conditions: Optional[List[RestoreCondition]] = None
    timeStarted: Optional[str] = None
    timeCompleted: Optional[str] = None
    commitTs: Optional[str] = None


@dataclass
class RestoreModel(DictMixin):
    """Restore model representing the TiDB Operator Restore CRD."""

    apiVersion: Optional[str] = None
    kind: Optional[str] = None
    metadata: Optional[meta_v1.ObjectMeta] = None
    spec: Optional[RestoreSpecModel] = None
    status: Optional[RestoreStatusModel] = None


class RestoreStatus(res.NamespacedSubResource, RestoreStatusModel):
    """Restore status sub-resource for the TiDB Operator Restore CRD."""

    _api_info = res.ApiInfo(
        resource=res.ResourceDef("pingcap.com", "v1alpha1", "Restore"),
        parent=res.ResourceDef("pingcap.com", "v1alpha1", "Restore"),
        plural="restores",
        verbs=["get", "patch", "put"],
        action="status",
    )


@resource_registry.register
class Restore(res.NamespacedResourceG, RestoreModel):
    """Restore resource for the TiDB Operator Restore CRD."""

    _api_info = res.ApiInfo(
        resource=res.ResourceDef("pingcap.com", "v1alpha1", "Restore"),
        plural="restores",
        verbs=[
            "delete",
            "deletecollection",
            "get",
            "global_list",
            "global_watch",
            "list",
            "patch",
            "post",
            "put",
            "watch",
        ],
    )
    Status: ClassVar = RestoreStatus


def is_br_linked(restore: Restore) -> bool:
    """Return True if the restore names a target cluster through its BR config."""
    return bool(restore.spec and restore.spec.br is not None)


def restore_mode(restore: Restore) -> RestoreMode:
    """Return the restore mode, defaulting to snapshot."""
    mode = restore.spec.mode if restore.spec else None
    return RestoreMode(mode) if mode else RestoreMode.SNAPSHOT


def federal_phase(restore: Restore) -> Optional[FederalVolumeRestorePhase]:
    """Return the federal volume restore phase marker, if any."""
    phase = restore.spec.federalVolumeRestorePhase if restore.spec else None
    return FederalVolumeRestorePhase(phase) if phase else None


def cluster_namespace(restore: Restore) -> str:
    """Return the namespace of the target cluster."""
    br = restore.spec.br if restore.spec else None
    if br and br.clusterNamespace:
        return br.clusterNamespace
    return restore.metadata.namespace


def restore_identity(restore: Restore) -> str:
    """Return the '<namespace>/<name>' identity of the restore."""
    return f"{restore.metadata.namespace}/{restore.metadata.name}"


def instance_name(restore: Restore) -> str:
    """Return the instance label value of the restore."""
    labels = restore.metadata.labels or {}
    return labels.get(LABEL_INSTANCE, restore.metadata.name)


def restore_labels(restore: Restore, job: bool = False) -> Dict[str, str]:
    """Return the labels of the objects created for the restore.

    Args:
        restore (Restore): The restore owning the objects.
        job (bool): Whether the labels are for a restore job.
    """
    labels = {
        LABEL_NAME: LABEL_VALUE_RESTORE,
        LABEL_MANAGED_BY: LABEL_VALUE_RESTORE_OPERATOR,
        LABEL_INSTANCE: instance_name(restore),
    }
    if job:
        labels[LABEL_COMPONENT] = LABEL_VALUE_RESTORE
        labels[LABEL_RESTORE] = restore.metadata.name
    return labels


def restore_pvc_name(restore: Restore) -> str:
    """Return the name of the claim used by the import job."""
    return f"restore-pvc-{restore.metadata.name}"


def restore_conditions(restore: Restore) -> Dict[str, RestoreCondition]:
    """Return the restore conditions keyed by type."""
    status = restore.status
    if not status or not status.conditions:
        return {}
    return {condition.type: condition for condition in status.conditions}


def is_condition_true(restore: Restore, condition_type: RestoreConditionType) -> bool:
    """Return True if the restore carries the given condition with a True status."""
    condition = restore_conditions(restore).get(condition_type.value)
    return condition is not None and condition.status == "True"


def restore_job_name(restore: Restore) -> str:
    """Return the deterministic name of the restore job.

    Volume snapshot restores run two jobs: one preparing the volumes and one
    restoring data once the volumes are complete.
    """
    name = restore.metadata.name
    if restore_mode(restore) == RestoreMode.VOLUME_SNAPSHOT:
        if is_condition_true(restore, RestoreConditionType.VOLUME_COMPLETE):
            return f"restore-data-{name}"
        return f"restore-volume-{name}"
    return f"restore-{name}"
