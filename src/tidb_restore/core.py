# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Restore manager library driving a Restore through one reconciliation pass."""

import logging
from typing import Optional

from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.resources.batch_v1 import Job

from config import ManagerConfig
from k8s_utils import K8sResource, is_not_found, k8s_resource_exists

from .conditions import (
    RestoreConditionUpdater,
    RestoreUpdateStatus,
    is_restore_complete,
    is_restore_scheduled,
    is_restore_tikv_complete,
    is_restore_volume_complete,
    new_condition,
)
from .crds.restore import (
    FederalVolumeRestorePhase,
    Restore,
    RestoreCondition,
    RestoreConditionType,
    RestoreMode,
    cluster_namespace,
    federal_phase,
    is_br_linked,
    restore_identity,
    restore_job_name,
    restore_mode,
)
from .crds.tidbcluster import TidbCluster, pd_all_members_ready, tikv_image
from .errors import (
    ConditionUpdateError,
    MetadataReadError,
    PVCError,
    PVCTooSmallError,
    RestoreInvalidError,
    RestoreJobBuildError,
    RestoreJobCreateError,
    RestoreManagerError,
    RestoreValidationError,
)
from .jobs import RestoreJobBuilder
from .metadata import BackupMetadataReader
from .pvc import ensure_restore_pvc
from .result import SyncResult
from .validation import RestoreValidator, validate_restore_spec
from .volume_snapshot import VolumeSnapshotRestorer

logger = logging.getLogger(__name__)


class RestoreManager:
    """Reconcile Restore objects of the TiDB Operator.

    Each call of ``sync`` runs one pass over a restore. A pass never blocks
    on a job: it creates at most one job and returns, and later passes
    observe progress through the restore conditions and the target cluster.
    A pass ends in one of three ways:

    * a ``SyncResult`` that is done;
    * a ``SyncResult`` waiting for a precondition, to be retried after a delay;
    * a ``RestoreManagerError``. ``RestoreInvalidError`` must not be retried,
      every other error is transient.
    """

    def __init__(self, kube_client: Client, config: Optional[ManagerConfig] = None) -> None:
        """Initialize the restore manager.

        Args:
            kube_client (Client): The lightkube client used to interact with the cluster.
            config (Optional[ManagerConfig]): The manager configuration.
        """
        self._kube_client = kube_client
        self._config = config or ManagerConfig()
        self._updater = RestoreConditionUpdater(kube_client)
        reader = BackupMetadataReader(kube_client, self._config.metadata_read_timeout)
        self._validator = RestoreValidator(reader)
        self._job_builder = RestoreJobBuilder(kube_client, self._config)
        self._volume_restorer = VolumeSnapshotRestorer(
            kube_client, self._config, reader, self._updater
        )

    def update_condition(
        self,
        restore: Restore,
        condition: RestoreCondition,
        new_status: Optional[RestoreUpdateStatus] = None,
    ) -> None:
        """Record a condition on the restore.

        Raises:
            ConditionUpdateError: If the restore status cannot be persisted.
        """
        self._updater.update(restore, condition, new_status)

    def _record(self, restore: Restore, condition: RestoreCondition) -> None:
        """Record a failure condition; the failure being reported takes precedence."""
        try:
            self._updater.update(restore, condition)
        except ConditionUpdateError as cue:
            logger.error(
                "Restore %s: failed to record %s (%s): %s",
                restore_identity(restore),
                condition.type,
                condition.reason,
                cue,
            )

    def _record_retry_failed(self, restore: Restore, error: RestoreManagerError) -> None:
        logger.error(
            "Restore %s failed with reason %s: %s",
            restore_identity(restore),
            error.reason,
            error.message,
        )
        self._record(
            restore,
            new_condition(
                RestoreConditionType.RETRY_FAILED, reason=error.reason, message=error.message
            ),
        )

    def _record_invalid(self, restore: Restore, error: RestoreManagerError) -> None:
        logger.error("Restore %s is invalid: %s", restore_identity(restore), error.message)
        self._record(
            restore,
            new_condition(
                RestoreConditionType.INVALID, reason=error.reason, message=error.message
            ),
        )

    def _invalidate(self, restore: Restore, error: RestoreManagerError) -> RestoreInvalidError:
        identity = restore_identity(restore)
        self._record_invalid(restore, error)
        return RestoreInvalidError(
            error.reason, f"invalid restore spec {identity}: {error.message}"
        )

    def _fetch_cluster(self, restore: Restore) -> TidbCluster:
        namespace = cluster_namespace(restore)
        cluster = restore.spec.br.cluster
        reason = f"failed to fetch tidbcluster {namespace}/{cluster}"
        try:
            return self._kube_client.get(TidbCluster, name=cluster, namespace=namespace)
        except ApiError as ae:
            error = RestoreManagerError(reason, str(ae))
            if is_not_found(ae):
                raise self._invalidate(restore, error) from ae
            self._record_retry_failed(restore, error)
            raise error from ae

    def _validate_spec(self, restore: Restore, tc: Optional[TidbCluster]) -> None:
        try:
            validate_restore_spec(restore, tikv_image(tc) if tc is not None else None)
        except RestoreValidationError as rve:
            raise self._invalidate(restore, rve) from rve

    def _sync_volume_snapshot(self, restore: Restore, tc: TidbCluster) -> Optional[SyncResult]:
        """Run the volume snapshot phases.

        Returns:
            Optional[SyncResult]: The outcome of the pass, or None if the pass
            continues with the job of the current stage.
        """
        identity = restore_identity(restore)
        tc_identity = f"{tc.metadata.namespace}/{tc.metadata.name}"
        try:
            self._validator.validate(restore, tc)
        except RestoreValidationError as rve:
            raise self._invalidate(restore, rve) from rve
        except MetadataReadError as mre:
            self._record_retry_failed(restore, mre)
            raise

        try:
            self._volume_restorer.restore(restore, tc)
        except RestoreManagerError as rme:
            self._record_retry_failed(restore, rme)
            raise

        if not pd_all_members_ready(tc):
            return SyncResult.wait(
                f"restore {identity}: waiting for all PD members are ready in "
                f"tidbcluster {tc_identity}",
                self._config.requeue_delay,
            )

        if is_restore_volume_complete(restore) and not is_restore_tikv_complete(restore):
            try:
                return self._volume_restorer.await_tikv_restart(restore, tc)
            except RestoreManagerError as rme:
                self._record_retry_failed(restore, rme)
                raise

        if federal_phase(restore) == FederalVolumeRestorePhase.FINISH:
            if not is_restore_complete(restore):
                return SyncResult.wait(
                    f"restore {identity}: waiting for restore status complete in "
                    f"tidbcluster {tc_identity}",
                    self._config.requeue_delay,
                )
            return SyncResult.done()
        return None

    def _build_job(self, restore: Restore, tc: Optional[TidbCluster]) -> Job:
        try:
            if tc is None:
                job = self._job_builder.make_import_job(restore)
                ensure_restore_pvc(self._kube_client, restore, self._config.default_storage_size)
            else:
                job = self._job_builder.make_restore_job(restore, tc)
        except PVCTooSmallError as e:
            self._record_invalid(restore, e)
            raise
        except (RestoreJobBuildError, PVCError) as e:
            self._record_retry_failed(restore, e)
            raise
        return job

    def sync(self, restore: Restore) -> SyncResult:
        """Run one reconciliation pass over the restore.

        Args:
            restore (Restore): The restore to reconcile.

        Returns:
            SyncResult: Done, or waiting for a precondition.

        Raises:
            RestoreInvalidError: If the restore is invalid; it must not be retried.
            RestoreManagerError: If the pass failed; it can be retried.
        """
        identity = restore_identity(restore)
        namespace = restore.metadata.namespace

        tc = None
        # A BR restore without a cluster name is rejected by the spec check.
        if is_br_linked(restore) and restore.spec.br.cluster:
            tc = self._fetch_cluster(restore)
        self._validate_spec(restore, tc)

        if tc is not None and restore_mode(restore) == RestoreMode.VOLUME_SNAPSHOT:
            result = self._sync_volume_snapshot(restore, tc)
            if result is not None:
                return result

        job_name = restore_job_name(restore)
        try:
            exists = k8s_resource_exists(self._kube_client, K8sResource(job_name, Job), namespace)
        except ApiError as ae:
            raise RestoreManagerError(
                "GetRestoreJobFailed", f"restore {identity} get job {job_name} failed: {ae}"
            ) from ae
        if exists:
            logger.info("Restore job %s/%s has been created, skipping", namespace, job_name)
            return SyncResult.done()

        job = self._build_job(restore, tc)
        try:
            self._kube_client.create(job)
        except ApiError as ae:
            error = RestoreJobCreateError(
                "CreateRestoreJobFailed",
                f"create restore {identity} job {job_name} failed: {ae}",
            )
            self._record_retry_failed(restore, error)
            raise error from ae
        logger.info("Created restore job %s/%s", namespace, job_name)

        # Volume snapshot restores run several jobs; the phase must not move
        # back to Scheduled once the first job is running.
        if not is_restore_scheduled(restore):
            self._updater.update(restore, new_condition(RestoreConditionType.SCHEDULED))
        return SyncResult.done()
