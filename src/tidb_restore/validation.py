# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Restore validation.

Two separate checks exist. The spec check looks at the Restore alone and
differs between simple and BR restores. The cross-cluster check compares a
volume snapshot restore's target cluster with the cluster recorded in the
backup metadata, and gates every destructive step of such a restore.
"""

import logging
from typing import Optional

from constants import (
    TIKV_ENCRYPTION_MASTER_KEY_ID_KEY,
    TIKV_ENCRYPTION_METHOD_KEY,
    TIKV_ENCRYPTION_PLAINTEXT,
)

from .crds.restore import (
    FederalVolumeRestorePhase,
    Restore,
    RestoreMode,
    federal_phase,
    is_br_linked,
    restore_mode,
)
from .crds.tidbcluster import TidbCluster, component_config, config_get, parse_image
from .errors import RestoreValidationError
from .metadata import BackupMetadataReader, CloudSnapBackup
from .storage import StorageProviderError, new_storage_backend

logger = logging.getLogger(__name__)


def _validate_storage_provider(restore: Restore) -> None:
    try:
        new_storage_backend(restore.spec)
    except StorageProviderError as spe:
        raise RestoreValidationError(f"invalid storage provider: {spe}") from spe


def validate_restore_spec(restore: Restore, tikv_image: Optional[str] = None) -> None:
    """Check that the restore spec is complete.

    Args:
        restore (Restore): The restore to check.
        tikv_image (Optional[str]): The TiKV image of the target cluster, for BR restores.

    Raises:
        RestoreValidationError: If the spec is invalid.
    """
    name = f"{restore.metadata.namespace}/{restore.metadata.name}"
    spec = restore.spec
    if spec is None:
        raise RestoreValidationError(f"missing spec in restore {name}")

    if not is_br_linked(restore):
        if spec.to is None:
            raise RestoreValidationError(f"missing cluster config in spec of {name}")
        if not spec.to.host:
            raise RestoreValidationError(f"missing cluster config in spec of {name}")
        if not spec.to.secretName:
            raise RestoreValidationError(f"missing tidbSecretName config in spec of {name}")
        _validate_storage_provider(restore)
        return

    if not spec.br.cluster:
        raise RestoreValidationError(f"cluster should be configured for BR in spec of {name}")
    try:
        mode = restore_mode(restore)
    except ValueError as ve:
        raise RestoreValidationError(f"invalid restore mode '{spec.mode}' of {name}") from ve
    if spec.federalVolumeRestorePhase:
        try:
            federal_phase(restore)
        except ValueError as ve:
            raise RestoreValidationError(
                "invalid federal volume restore phase "
                f"'{spec.federalVolumeRestorePhase}' of {name}"
            ) from ve
    if mode == RestoreMode.PITR and not spec.pitrRestoredTs:
        raise RestoreValidationError(f"pitrRestoredTs should be configured in spec of {name}")
    if mode != RestoreMode.VOLUME_SNAPSHOT and tikv_image is not None:
        _, version = parse_image(tikv_image)
        if not version:
            raise RestoreValidationError(
                f"TiKV image {tikv_image} of {name} has no version tag required by BR"
            )
    _validate_storage_provider(restore)


def _check_replicas(role: str, target: Optional[int], source: int) -> None:
    if target is None:
        if source != 0:
            logger.error("%s is not configured, backupmeta has %d %s", role, source, role)
            raise RestoreValidationError(f"{role} replica mismatched")
    elif target != source:
        logger.error(
            "cluster has %d %s configured, backupmeta has %d %s", target, role, source, role
        )
        raise RestoreValidationError(f"{role} replica mismatched")


def check_tikv_encryption(tc: TidbCluster, backup_meta: CloudSnapBackup) -> None:
    """Check that the target TiKV encryption matches the backup.

    A backup without encryption can be restored into any cluster. A backup
    with encryption requires the same method and, when the backup names a
    master key, the same master key id. The key id is unique per key in the
    key management service, so the key material is not compared.

    Raises:
        RestoreValidationError: If the encryption configs do not match.
    """
    backup_method = config_get(backup_meta.source_tikv_config(), TIKV_ENCRYPTION_METHOD_KEY)
    if backup_method is None or backup_method == TIKV_ENCRYPTION_PLAINTEXT:
        return

    config = component_config(tc.spec.tikv.config) if tc.spec.tikv else None
    if not config:
        raise RestoreValidationError(
            "TiKV encryption mismatched with backup: the backup enabled TiKV encryption, "
            "but spec.tikv.config of the restore cluster does not configure it. Check "
            "kubernetes.crd_tidb_cluster.spec in the backupmeta and edit the cluster"
        )

    if config_get(config, TIKV_ENCRYPTION_METHOD_KEY) != backup_method:
        raise RestoreValidationError(
            "TiKV encryption mismatched with backup: the backup data enabled TiKV "
            "encryption, the restore cluster does not use the same method"
        )

    backup_key_id = config_get(backup_meta.source_tikv_config(), TIKV_ENCRYPTION_MASTER_KEY_ID_KEY)
    if backup_key_id is not None:
        restore_key_id = config_get(config, TIKV_ENCRYPTION_MASTER_KEY_ID_KEY)
        if restore_key_id is None:
            raise RestoreValidationError(
                "TiKV encryption mismatched with backup: the backup data has a master key, "
                "the restore cluster has none"
            )
        if restore_key_id != backup_key_id:
            raise RestoreValidationError(
                "TiKV encryption mismatched with backup: master key mismatched"
            )


def validate_volume_snapshot_restore(
    restore: Restore, tc: TidbCluster, backup_meta: CloudSnapBackup
) -> None:
    """Check a volume snapshot restore against its target cluster and the backup metadata.

    Args:
        restore (Restore): The volume snapshot restore.
        tc (TidbCluster): The target cluster.
        backup_meta (CloudSnapBackup): The metadata recorded at backup time.

    Raises:
        RestoreValidationError: If the restore must not proceed.
    """
    tiflash_replicas, tikv_replicas = backup_meta.source_replicas()
    _check_replicas(
        "tiflash", tc.spec.tiflash.replicas if tc.spec.tiflash else None, tiflash_replicas
    )
    _check_replicas("tikv", tc.spec.tikv.replicas if tc.spec.tikv else None, tikv_replicas)

    if (
        restore_mode(restore) == RestoreMode.VOLUME_SNAPSHOT
        and federal_phase(restore) != FederalVolumeRestorePhase.FINISH
        and not tc.spec.recoveryMode
    ):
        logger.error("recovery mode is not set for volume snapshot restore")
        raise RestoreValidationError("recovery mode is off")

    try:
        check_tikv_encryption(tc, backup_meta)
    except ValueError as ve:
        raise RestoreValidationError(f"TiKV encryption mismatched with backup: {ve}") from ve


class RestoreValidator:
    """Validate volume snapshot restores against the backup metadata."""

    def __init__(self, reader: BackupMetadataReader) -> None:
        self._reader = reader

    def validate(self, restore: Restore, tc: TidbCluster) -> None:
        """Read the backup metadata and validate the restore against it.

        Raises:
            MetadataReadError: If the backup metadata cannot be read.
            RestoreValidationError: If the restore must not proceed.
        """
        backup_meta = self._reader.read_backup_meta(restore)
        validate_volume_snapshot_restore(restore, tc, backup_meta)
