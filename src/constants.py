# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""File containing constants."""

from enum import Enum

K8S_CONFLICT_RETRY_ATTEMPTS = 5
K8S_CONFLICT_RETRY_DELAY = 0.5

METADATA_READ_TIMEOUT = 60
REQUEUE_DELAY = 30

DEFAULT_STORAGE_SIZE = "100Gi"
DEFAULT_SERVICE_ACCOUNT_NAME = "tidb-backup-manager"
DEFAULT_BACKUP_MANAGER_IMAGE = "pingcap/tidb-backup-manager:latest"
DEFAULT_BR_IMAGE = "pingcap/br"
DEFAULT_TIKV_BASE_IMAGE = "pingcap/tikv"

CLUSTER_BACKUP_META = "backupmeta"
CLUSTER_RESTORE_META = "restoremeta"

BACKUP_ROOT_PATH = "/backup"
BR_BIN_PATH = "/var/lib/br-bin"
LIGHTNING_BIN_PATH = "/var/lib/lightning-bin"
TIDB_CLIENT_TLS_PATH = "/var/lib/tidb-client-tls"
CLUSTER_CLIENT_TLS_PATH = "/var/lib/cluster-client-tls"
CLUSTER_CLIENT_VOLUME_NAME = "cluster-client-tls"
TIDB_CLIENT_VOLUME_NAME = "tidb-client-tls"
BR_BIN_VOLUME_NAME = "br-bin"
LIGHTNING_BIN_VOLUME_NAME = "lightning-bin"
RESTORE_JOB_CONTAINER_NAME = "restore"

TIKV_ENCRYPTION_METHOD_KEY = "security.encryption.data-encryption-method"
TIKV_ENCRYPTION_MASTER_KEY_ID_KEY = "security.encryption.master-key.key-id"
TIKV_ENCRYPTION_PLAINTEXT = "plaintext"

ANN_TIKV_VOLUMES_READY = "tidb.pingcap.com/tikv-volumes-ready"
ANN_SKIP_TLS_WHEN_CONNECT_TIDB = "tidb.pingcap.com/skip-tls-when-connect-tidb"

LABEL_NAME = "app.kubernetes.io/name"
LABEL_INSTANCE = "app.kubernetes.io/instance"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_COMPONENT = "app.kubernetes.io/component"
LABEL_RESTORE = "tidb.pingcap.com/restore"

LABEL_VALUE_CLUSTER = "tidb-cluster"
LABEL_VALUE_RESTORE = "restore"
LABEL_VALUE_OPERATOR = "tidb-operator"
LABEL_VALUE_RESTORE_OPERATOR = "restore-operator"
LABEL_VALUE_TIKV = "tikv"


class CloudProvider(str, Enum):
    """Cloud provider hosting the snapshot volumes."""

    AWS = "aws"
    GCP = "gcp"
