# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Restore job specifications.

Simple restores run an import job that downloads the backup into a claim and
loads it with TiDB Lightning. BR-linked restores run BR against the target
cluster. Both jobs run the backup manager image, which receives the restore
parameters as command line arguments.
"""

import logging
import os
from typing import Dict, List, Optional

from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.models.batch_v1 import JobSpec
from lightkube.models.core_v1 import (
    Container,
    EmptyDirVolumeSource,
    EnvVar,
    EnvVarSource,
    PersistentVolumeClaimVolumeSource,
    PodSpec,
    PodTemplateSpec,
    SecretKeySelector,
    SecretVolumeSource,
    Volume,
    VolumeMount,
)
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.batch_v1 import Job
from lightkube.resources.core_v1 import Secret

from config import ManagerConfig
from constants import (
    BACKUP_ROOT_PATH,
    BR_BIN_PATH,
    BR_BIN_VOLUME_NAME,
    CLUSTER_CLIENT_TLS_PATH,
    CLUSTER_CLIENT_VOLUME_NAME,
    DEFAULT_BR_IMAGE,
    DEFAULT_SERVICE_ACCOUNT_NAME,
    LIGHTNING_BIN_PATH,
    LIGHTNING_BIN_VOLUME_NAME,
    RESTORE_JOB_CONTAINER_NAME,
    TIDB_CLIENT_TLS_PATH,
    TIDB_CLIENT_VOLUME_NAME,
)
from k8s_utils import owner_reference

from .conditions import is_restore_volume_complete
from .crds.restore import (
    Restore,
    RestoreMode,
    restore_identity,
    restore_job_name,
    restore_labels,
    restore_mode,
    restore_pvc_name,
)
from .crds.tidbcluster import (
    TidbCluster,
    is_tidb_client_tls_enabled,
    is_tls_cluster_enabled,
    parse_image,
    skip_tls_when_connect_tidb,
    tikv_image,
)
from .errors import RestoreJobBuildError
from .storage import StorageProviderError, backup_data_path, new_storage_backend

logger = logging.getLogger(__name__)

TIDB_PASSWORD_KEY = "password"


def cluster_client_tls_secret_name(cluster: str) -> str:
    """Return the name of the Secret holding the cluster client certificate."""
    return f"{cluster}-cluster-client-secret"


def tidb_client_tls_secret_name(cluster: str, secret_name: Optional[str] = None) -> str:
    """Return the name of the Secret holding the TiDB client certificate."""
    return secret_name or f"{cluster}-tidb-client-secret"


def br_image(tikv_version: str, tool_image: Optional[str] = None) -> str:
    """Return the image BR is copied from.

    An override image without a tag is tagged with the TiKV version.
    """
    if not tool_image:
        return f"{DEFAULT_BR_IMAGE}:{tikv_version}"
    _, tag = parse_image(tool_image)
    if not tag:
        return f"{tool_image}:{tikv_version}"
    return tool_image


def merge_env(env: List[EnvVar], overrides: Optional[List[EnvVar]]) -> List[EnvVar]:
    """Return the environment with the overrides replacing entries of the same name."""
    merged = {var.name: var for var in env}
    for var in overrides or []:
        merged[var.name] = var
    return list(merged.values())


def _secret_env(name: str, secret_name: str, key: str) -> EnvVar:
    return EnvVar(
        name=name,
        valueFrom=EnvVarSource(secretKeyRef=SecretKeySelector(name=secret_name, key=key)),
    )


class RestoreJobBuilder:
    """Build the specification of the job running a restore."""

    def __init__(self, kube_client: Client, config: ManagerConfig) -> None:
        """Initialize the builder.

        Args:
            kube_client (Client): The lightkube client used to check the referenced Secrets.
            config (ManagerConfig): The manager configuration.
        """
        self._kube_client = kube_client
        self._config = config

    def _check_secret(self, name: str, namespace: str, reason: str, identity: str) -> None:
        try:
            self._kube_client.get(Secret, name=name, namespace=namespace)
        except ApiError as ae:
            logger.error(
                "Failed to get secret %s/%s for restore %s: %s", namespace, name, identity, ae
            )
            raise RestoreJobBuildError(
                reason, f"restore {identity}, get secret {namespace}/{name} failed: {ae}"
            ) from ae

    def _password_env(self, restore: Restore) -> List[EnvVar]:
        to = restore.spec.to
        if to is None or not to.secretName:
            return []
        self._check_secret(
            to.secretName,
            restore.metadata.namespace,
            "GetTidbSecretFailed",
            restore_identity(restore),
        )
        return [_secret_env("TIDB_PASSWORD", to.secretName, TIDB_PASSWORD_KEY)]

    def _storage_env(self, restore: Restore) -> List[EnvVar]:
        identity = restore_identity(restore)
        try:
            backend = new_storage_backend(restore.spec)
        except StorageProviderError as spe:
            raise RestoreJobBuildError(
                "NewStorageBackendFailed", f"restore {identity}, {spe}"
            ) from spe
        if restore.spec.useKMS or not backend.secret_name:
            return []
        self._check_secret(
            backend.secret_name, restore.metadata.namespace, "GetStorageSecretFailed", identity
        )
        return [
            _secret_env(env_name, backend.secret_name, key)
            for env_name, key in backend.credential_env.items()
        ]

    def _env(self, restore: Restore, extra: Optional[List[EnvVar]] = None) -> List[EnvVar]:
        env = self._password_env(restore) + self._storage_env(restore) + (extra or [])
        env = merge_env(env, restore.spec.env)
        if "TZ" in os.environ and all(var.name != "TZ" for var in env):
            env.append(EnvVar(name="TZ", value=os.environ["TZ"]))
        return env

    def _job(
        self,
        restore: Restore,
        args: List[str],
        env: List[EnvVar],
        volumes: List[Volume],
        volume_mounts: List[VolumeMount],
        init_containers: List[Container],
    ) -> Job:
        spec = restore.spec
        labels: Dict[str, str] = {
            **restore_labels(restore, job=True),
            **(restore.metadata.labels or {}),
        }
        annotations = restore.metadata.annotations
        container = Container(
            name=RESTORE_JOB_CONTAINER_NAME,
            image=self._config.backup_manager_image,
            args=args,
            imagePullPolicy="IfNotPresent",
            volumeMounts=volume_mounts,
            env=env,
            resources=spec.resources,
        )
        pod_spec = PodSpec(
            securityContext=spec.podSecurityContext,
            serviceAccountName=spec.serviceAccount or DEFAULT_SERVICE_ACCOUNT_NAME,
            initContainers=init_containers or None,
            containers=[container],
            restartPolicy="Never",
            tolerations=spec.tolerations,
            imagePullSecrets=spec.imagePullSecrets,
            affinity=spec.affinity,
            volumes=volumes,
            priorityClassName=spec.priorityClassName,
        )
        return Job(
            metadata=ObjectMeta(
                name=restore_job_name(restore),
                namespace=restore.metadata.namespace,
                labels=labels,
                annotations=annotations,
                ownerReferences=[owner_reference(restore)],
            ),
            spec=JobSpec(
                backoffLimit=0,
                template=PodTemplateSpec(
                    metadata=ObjectMeta(labels=labels, annotations=annotations),
                    spec=pod_spec,
                ),
            ),
        )

    def make_import_job(self, restore: Restore) -> Job:
        """Build the job importing a backup into a TiDB cluster with TiDB Lightning.

        The job mounts the restore claim, which must be ensured separately.

        Args:
            restore (Restore): The simple restore.

        Returns:
            Job: The job to create.

        Raises:
            RestoreJobBuildError: If the job cannot be built.
        """
        namespace = restore.metadata.namespace
        identity = restore_identity(restore)
        env = self._env(restore)
        try:
            backup_path = backup_data_path(restore.spec)
        except StorageProviderError as spe:
            raise RestoreJobBuildError(
                "GetBackupPathFailed", f"restore {identity}, {spe}"
            ) from spe

        args = [
            "import",
            f"--namespace={namespace}",
            f"--restoreName={restore.metadata.name}",
            f"--backupPath={backup_path}",
        ]
        volumes = [
            Volume(
                name=RESTORE_JOB_CONTAINER_NAME,
                persistentVolumeClaim=PersistentVolumeClaimVolumeSource(
                    claimName=restore_pvc_name(restore)
                ),
            )
        ]
        volume_mounts = [VolumeMount(name=RESTORE_JOB_CONTAINER_NAME, mountPath=BACKUP_ROOT_PATH)]
        init_containers = []

        tls_secret = restore.spec.to.tlsClientSecretName if restore.spec.to else None
        if tls_secret:
            args.append("--client-tls=true")
            volume_mounts.append(
                VolumeMount(
                    name=TIDB_CLIENT_VOLUME_NAME, readOnly=True, mountPath=TIDB_CLIENT_TLS_PATH
                )
            )
            volumes.append(
                Volume(
                    name=TIDB_CLIENT_VOLUME_NAME,
                    secret=SecretVolumeSource(secretName=tls_secret),
                )
            )

        if restore.spec.toolImage:
            lightning_mount = VolumeMount(
                name=LIGHTNING_BIN_VOLUME_NAME, readOnly=False, mountPath=LIGHTNING_BIN_PATH
            )
            volume_mounts.append(lightning_mount)
            volumes.append(Volume(name=LIGHTNING_BIN_VOLUME_NAME, emptyDir=EmptyDirVolumeSource()))
            init_containers.append(
                Container(
                    name="lightning",
                    image=restore.spec.toolImage,
                    command=["/bin/sh", "-c"],
                    args=[
                        f"cp /tidb-lightning {LIGHTNING_BIN_PATH}/tidb-lightning; "
                        "echo 'tidb-lightning copy finished'"
                    ],
                    imagePullPolicy="IfNotPresent",
                    volumeMounts=[lightning_mount],
                    resources=restore.spec.resources,
                )
            )

        logger.info("Built import job for restore %s with backup path %s", identity, backup_path)
        return self._job(restore, args, env, volumes, volume_mounts, init_containers)

    def make_restore_job(self, restore: Restore, tc: TidbCluster) -> Job:
        """Build the job restoring a backup into a TidbCluster with BR.

        Args:
            restore (Restore): The BR-linked restore.
            tc (TidbCluster): The target cluster.

        Returns:
            Job: The job to create.

        Raises:
            RestoreJobBuildError: If the job cannot be built.
        """
        namespace = restore.metadata.namespace
        cluster = restore.spec.br.cluster
        env = self._env(restore, [EnvVar(name="BR_LOG_TO_TERM", value="1")])

        args = [
            "restore",
            f"--namespace={namespace}",
            f"--restoreName={restore.metadata.name}",
        ]
        _, tikv_version = parse_image(tikv_image(tc))
        if tikv_version:
            args.append(f"--tikvVersion={tikv_version}")

        mode = restore_mode(restore)
        args.append(f"--mode={mode.value}")
        if mode == RestoreMode.PITR:
            args.append(f"--pitrRestoredTs={restore.spec.pitrRestoredTs}")
        elif mode == RestoreMode.VOLUME_SNAPSHOT and not is_restore_volume_complete(restore):
            args.append("--prepare")
            if restore.spec.volumeAZ:
                args.append(f"--target-az={restore.spec.volumeAZ}")

        volumes: List[Volume] = []
        volume_mounts: List[VolumeMount] = []
        if is_tls_cluster_enabled(tc):
            args.append("--cluster-tls=true")
            volume_mounts.append(
                VolumeMount(
                    name=CLUSTER_CLIENT_VOLUME_NAME,
                    readOnly=True,
                    mountPath=CLUSTER_CLIENT_TLS_PATH,
                )
            )
            volumes.append(
                Volume(
                    name=CLUSTER_CLIENT_VOLUME_NAME,
                    secret=SecretVolumeSource(secretName=cluster_client_tls_secret_name(cluster)),
                )
            )

        to = restore.spec.to
        if (
            to is not None
            and is_tidb_client_tls_enabled(tc)
            and not skip_tls_when_connect_tidb(tc)
        ):
            args.append("--client-tls=true")
            if tc.spec.tidb.tlsClient.skipInternalClientCA:
                args.append("--skipClientCA=true")
            volume_mounts.append(
                VolumeMount(
                    name=TIDB_CLIENT_VOLUME_NAME, readOnly=True, mountPath=TIDB_CLIENT_TLS_PATH
                )
            )
            volumes.append(
                Volume(
                    name=TIDB_CLIENT_VOLUME_NAME,
                    secret=SecretVolumeSource(
                        secretName=tidb_client_tls_secret_name(cluster, to.tlsClientSecretName)
                    ),
                )
            )

        br_mount = VolumeMount(name=BR_BIN_VOLUME_NAME, readOnly=False, mountPath=BR_BIN_PATH)
        volume_mounts.append(br_mount)
        volumes.append(Volume(name=BR_BIN_VOLUME_NAME, emptyDir=EmptyDirVolumeSource()))

        local = restore.spec.local
        if local is not None and local.volume is not None and local.volumeMount is not None:
            volumes.append(local.volume)
            volume_mounts.append(local.volumeMount)

        init_containers = [
            Container(
                name="br",
                image=br_image(tikv_version, restore.spec.toolImage),
                command=["/bin/sh", "-c"],
                args=[f"cp /br {BR_BIN_PATH}/br; echo 'BR copy finished'"],
                imagePullPolicy="IfNotPresent",
                volumeMounts=[br_mount],
                resources=restore.spec.resources,
            )
        ]

        logger.info(
            "Built %s restore job for restore %s", mode.value, restore_identity(restore)
        )
        return self._job(restore, args, env, volumes, volume_mounts, init_containers)
