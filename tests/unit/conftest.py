# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

import copy
from unittest.mock import MagicMock

import httpx
import pytest
from lightkube import ApiError

from tidb_restore.crds import Restore, TidbCluster
from tidb_restore.metadata import CloudSnapBackup

NAMESPACE = "tidb"
RESTORE_NAME = "demo-restore"
CLUSTER_NAME = "basic"
TC_RESOURCE_VERSION = "4242"

S3_PROVIDER = {
    "provider": "aws",
    "region": "us-west-2",
    "bucket": "backups",
    "prefix": "demo",
    "secretName": "s3-secret",
}


def new_api_error(code: int, message: str = "error") -> ApiError:
    """Build a lightkube ApiError with the given status code."""
    mock_response = MagicMock(spec=httpx.Response)
    mock_response.json.return_value = {"code": code, "message": message}
    return ApiError(request=MagicMock(), response=mock_response)


@pytest.fixture()
def make_api_error():
    """Return a factory of lightkube ApiErrors."""
    return new_api_error


@pytest.fixture()
def make_restore():
    """Return a factory of Restore objects.

    A simple restore is built unless ``br`` is given.
    """

    def factory(spec=None, conditions=None, br=None, labels=None, name=RESTORE_NAME):
        if spec is None:
            spec = {"s3": dict(S3_PROVIDER)}
            if br is None:
                spec["to"] = {
                    "host": "basic-tidb.tidb",
                    "port": 4000,
                    "user": "root",
                    "secretName": "tidb-secret",
                }
            else:
                spec["br"] = br
        data = {
            "apiVersion": "pingcap.com/v1alpha1",
            "kind": "Restore",
            "metadata": {
                "name": name,
                "namespace": NAMESPACE,
                "uid": "restore-uid",
                "resourceVersion": "1",
                "labels": labels,
            },
            "spec": spec,
        }
        if conditions:
            data["status"] = {
                "conditions": [
                    {"type": condition_type, "status": "True"} for condition_type in conditions
                ]
            }
        return Restore.from_dict(data)

    return factory


def tidbcluster_spec(tikv_replicas=3, tikv_config=None):
    """Return the spec of a TidbCluster as the operator stores it."""
    return {
        "version": "v7.5.0",
        "timezone": "UTC",
        "pvReclaimPolicy": "Retain",
        "configUpdateStrategy": "RollingUpdate",
        "enableDynamicConfiguration": True,
        "helper": {"image": "alpine:3.16.0"},
        "discovery": {},
        "pd": {
            "baseImage": "pingcap/pd",
            "replicas": 3,
            "maxFailoverCount": 0,
            "storageClassName": "gp3",
            "requests": {"storage": "10Gi"},
            "config": {},
        },
        "tikv": {
            "baseImage": "pingcap/tikv",
            "replicas": tikv_replicas,
            "maxFailoverCount": 0,
            "storageClassName": "gp3",
            "requests": {"storage": "100Gi"},
            "config": tikv_config,
        },
        "tidb": {
            "baseImage": "pingcap/tidb",
            "replicas": 2,
            "maxFailoverCount": 0,
            "service": {"type": "ClusterIP"},
            "config": {},
        },
    }


@pytest.fixture()
def make_tidbcluster():
    """Return a factory of healthy TidbCluster objects."""

    def factory(
        tikv_replicas=3,
        tiflash_replicas=None,
        recovery_mode=False,
        tikv_config=None,
        annotations=None,
        pd_ready=True,
        tikv_ready=True,
        spec_overrides=None,
    ):
        spec = tidbcluster_spec(tikv_replicas, tikv_config)
        spec["recoveryMode"] = recovery_mode
        if tiflash_replicas is not None:
            spec["tiflash"] = {"replicas": tiflash_replicas}
        spec.update(spec_overrides or {})
        pd_members = {
            f"{CLUSTER_NAME}-pd-{i}": {"name": f"{CLUSTER_NAME}-pd-{i}", "health": pd_ready}
            for i in range(3)
        }
        tikv_stores = {
            str(i): {
                "id": str(i),
                "podName": f"{CLUSTER_NAME}-tikv-{i}",
                "state": "Up" if tikv_ready else "Down",
            }
            for i in range(tikv_replicas)
        }
        return TidbCluster.from_dict(
            {
                "apiVersion": "pingcap.com/v1alpha1",
                "kind": "TidbCluster",
                "metadata": {
                    "name": CLUSTER_NAME,
                    "namespace": NAMESPACE,
                    "uid": "tc-uid",
                    "resourceVersion": TC_RESOURCE_VERSION,
                    "generation": 3,
                    "annotations": copy.deepcopy(annotations),
                },
                "spec": spec,
                "status": {
                    "clusterID": "7212345678901234567",
                    "pd": {"phase": "Normal", "members": pd_members},
                    "tikv": {"phase": "Normal", "stores": tikv_stores},
                    "conditions": [{"type": "Ready", "status": "True"}],
                },
            }
        )

    return factory


@pytest.fixture()
def kube_objects():
    """Objects known to the mocked API server, keyed by resource type and name."""
    return {}


@pytest.fixture()
def mock_lightkube_client(kube_objects):
    """Mock the lightkube Client with an in-memory object store."""
    client = MagicMock()

    def get(resource, name, namespace=None):
        try:
            return kube_objects[(resource, name)]
        except KeyError:
            raise new_api_error(404, f"{resource.__name__} {name} not found") from None

    def create(obj, *args, **kwargs):
        key = (type(obj), obj.metadata.name)
        if key in kube_objects:
            raise new_api_error(409, "already exists")
        kube_objects[key] = obj
        return obj

    client.get.side_effect = get
    client.create.side_effect = create
    client.list.return_value = []
    return client


@pytest.fixture()
def tidbcluster_patches(mock_lightkube_client):
    """Return the bodies of the patches sent to TidbCluster objects."""

    def bodies():
        return [
            call.args[2]
            for call in mock_lightkube_client.patch.call_args_list
            if call.args[0] is TidbCluster
        ]

    return bodies


@pytest.fixture()
def make_backup_meta():
    """Return a factory of backup metadata recording a source cluster topology."""

    def factory(tikv_replicas=3, tiflash_replicas=None, tikv_config=None):
        spec = tidbcluster_spec(tikv_replicas, tikv_config)
        spec["recoveryMode"] = True
        if tiflash_replicas is not None:
            spec["tiflash"] = {"baseImage": "pingcap/tiflash", "replicas": tiflash_replicas}
        crd_tidb_cluster = {
            "apiVersion": "pingcap.com/v1alpha1",
            "kind": "TidbCluster",
            "metadata": {"name": CLUSTER_NAME, "namespace": "source"},
            "spec": spec,
        }
        return CloudSnapBackup.model_validate(
            {
                "kubernetes": {"crd_tidb_cluster": crd_tidb_cluster},
                "tikv": {"replicas": tikv_replicas},
            }
        )

    return factory


@pytest.fixture()
def restore_meta():
    """Restore metadata of a cluster with two EBS backed TiKV volumes."""
    pvs, pvcs, stores = [], [], []
    for i in range(2):
        claim = f"tikv-{CLUSTER_NAME}-tikv-{i}"
        pvs.append(
            {
                "apiVersion": "v1",
                "kind": "PersistentVolume",
                "metadata": {
                    "name": f"pv-tikv-{i}",
                    "uid": f"old-pv-uid-{i}",
                    "resourceVersion": "1234",
                    "labels": {"app.kubernetes.io/component": "tikv"},
                    "annotations": {"pv.kubernetes.io/bound-by-controller": "yes"},
                },
                "spec": {
                    "capacity": {"storage": "100Gi"},
                    "accessModes": ["ReadWriteOnce"],
                    "csi": {"driver": "ebs.csi.aws.com", "volumeHandle": f"vol-old-{i}"},
                    "claimRef": {
                        "kind": "PersistentVolumeClaim",
                        "name": claim,
                        "namespace": "source",
                        "uid": f"old-pvc-uid-{i}",
                        "resourceVersion": "4321",
                    },
                },
                "status": {"phase": "Bound"},
            }
        )
        pvcs.append(
            {
                "apiVersion": "v1",
                "kind": "PersistentVolumeClaim",
                "metadata": {
                    "name": claim,
                    "namespace": "source",
                    "uid": f"old-pvc-uid-{i}",
                    "annotations": {"pv.kubernetes.io/bind-completed": "yes"},
                },
                "spec": {
                    "accessModes": ["ReadWriteOnce"],
                    "resources": {"requests": {"storage": "100Gi"}},
                    "volumeName": f"pv-tikv-{i}",
                },
                "status": {"phase": "Bound"},
            }
        )
        stores.append(
            {
                "store_id": i + 1,
                "volumes": [
                    {
                        "volume_id": f"vol-old-{i}",
                        "type": "raft-engine.dir",
                        "mount_path": "/var/lib/tikv",
                        "snapshot_id": f"snap-{i}",
                        "restore_volume_id": f"vol-new-{i}",
                    }
                ],
            }
        )
    return CloudSnapBackup.model_validate(
        {
            "tikv": {"replicas": 2, "stores": stores},
            "kubernetes": {"pvs": pvs, "pvcs": pvcs, "crd_tidb_cluster": {}},
        }
    )
