# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Subset of the TiDB Operator TidbCluster CRD model.

Fields outside the model are dropped when parsing, so a TidbCluster read
through it is only ever written back with merge patches.

Reference: https://docs.pingcap.com/tidb-in-kubernetes/stable/configure-a-tidb-cluster
"""

import logging
import tomllib
from typing import Any, ClassVar, Dict, Optional, Tuple

from lightkube.codecs import resource_registry
from lightkube.core import resource as res
from lightkube.core.schema import DictMixin, dataclass
from lightkube.models import meta_v1

from constants import (
    ANN_SKIP_TLS_WHEN_CONNECT_TIDB,
    DEFAULT_TIKV_BASE_IMAGE,
    LABEL_COMPONENT,
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    LABEL_NAME,
    LABEL_VALUE_CLUSTER,
    LABEL_VALUE_OPERATOR,
    LABEL_VALUE_TIKV,
)

logger = logging.getLogger(__name__)

TIKV_STATE_UP = "Up"


@dataclass
class ComponentSpec(DictMixin):
    """Common part of the PD, TiKV and TiFlash specifications."""

    replicas: int = 0
    baseImage: Optional[str] = None
    image: Optional[str] = None
    version: Optional[str] = None
    config: Optional[Any] = None


@dataclass
class TiDBTLSClient(DictMixin):
    """TLS settings between clients and TiDB."""

    enabled: Optional[bool] = None
    skipInternalClientCA: Optional[bool] = None


@dataclass
class TiDBSpec(DictMixin):
    """TiDB component specification."""

    replicas: int = 0
    tlsClient: Optional[TiDBTLSClient] = None


@dataclass
class TLSCluster(DictMixin):
    """TLS settings between cluster components."""

    enabled: Optional[bool] = None


@dataclass
class TidbClusterSpecModel(DictMixin):
    """TidbCluster specification model."""

    version: Optional[str] = None
    pd: Optional[ComponentSpec] = None
    tikv: Optional[ComponentSpec] = None
    tiflash: Optional[ComponentSpec] = None
    tidb: Optional[TiDBSpec] = None
    tlsCluster: Optional[TLSCluster] = None
    recoveryMode: Optional[bool] = None
    acrossK8s: Optional[bool] = None


@dataclass
class PDStatus(DictMixin):
    """Observed PD status."""

    members: Optional[Dict[str, Any]] = None


@dataclass
class TiKVStatus(DictMixin):
    """Observed TiKV status."""

    stores: Optional[Dict[str, Any]] = None


@dataclass
class TidbClusterStatusModel(DictMixin):
    """TidbCluster status model."""

    pd: Optional[PDStatus] = None
    tikv: Optional[TiKVStatus] = None


@dataclass
class TidbClusterModel(DictMixin):
    """TidbCluster model representing the TiDB Operator TidbCluster CRD."""

    apiVersion: Optional[str] = None
    kind: Optional[str] = None
    metadata: Optional[meta_v1.ObjectMeta] = None
    spec: Optional[TidbClusterSpecModel] = None
    status: Optional[TidbClusterStatusModel] = None


@resource_registry.register
class TidbCluster(res.NamespacedResourceG, TidbClusterModel):
    """TidbCluster resource for the TiDB Operator TidbCluster CRD."""

    _api_info = res.ApiInfo(
        resource=res.ResourceDef("pingcap.com", "v1alpha1", "TidbCluster"),
        plural="tidbclusters",
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


def tikv_image(tc: TidbCluster) -> str:
    """Return the TiKV image of the cluster.

    The base image takes priority over the explicit image and is tagged with
    the TiKV version, falling back to the cluster version.
    """
    tikv = tc.spec.tikv or ComponentSpec()
    image = tikv.image or ""
    base_image = tikv.baseImage
    if base_image or not image:
        base_image = base_image or DEFAULT_TIKV_BASE_IMAGE
        version = tikv.version if tikv.version is not None else tc.spec.version
        image = f"{base_image}:{version}" if version else base_image
    return image


def parse_image(image: str) -> Tuple[str, str]:
    """Split an image reference into name and tag.

    A colon that belongs to a registry port is not a tag separator.
    """
    image = image.split("@", 1)[0]
    name, sep, tag = image.rpartition(":")
    if not sep or not name or "/" in tag:
        return image, ""
    return name, tag


def is_tls_cluster_enabled(tc: TidbCluster) -> bool:
    """Return True if TLS between cluster components is enabled."""
    return bool(tc.spec.tlsCluster and tc.spec.tlsCluster.enabled)


def skip_tls_when_connect_tidb(tc: TidbCluster) -> bool:
    """Return True if clients are told to skip TLS when connecting to TiDB."""
    annotations = tc.metadata.annotations or {}
    return annotations.get(ANN_SKIP_TLS_WHEN_CONNECT_TIDB) == "true"


def is_tidb_client_tls_enabled(tc: TidbCluster) -> bool:
    """Return True if TLS between clients and TiDB is enabled."""
    tidb = tc.spec.tidb
    return bool(tidb and tidb.tlsClient and tidb.tlsClient.enabled)


def pd_all_members_ready(tc: TidbCluster) -> bool:
    """Return True if every desired PD member is healthy."""
    if tc.spec.pd is None:
        return True
    members = (tc.status.pd.members if tc.status and tc.status.pd else None) or {}
    if len(members) != tc.spec.pd.replicas:
        return False
    return all(member.get("health") for member in members.values())


def all_tikvs_are_available(tc: TidbCluster) -> bool:
    """Return True if every desired TiKV store is up."""
    desired = tc.spec.tikv.replicas if tc.spec.tikv else 0
    stores = (tc.status.tikv.stores if tc.status and tc.status.tikv else None) or {}
    if len(stores) != desired:
        return False
    return all(store.get("state") == TIKV_STATE_UP for store in stores.values())


def component_config(config: Any) -> Optional[Dict[str, Any]]:
    """Return a component config as a mapping.

    The operator accepts the config either as a TOML document or as a mapping.

    Raises:
        ValueError: If the TOML document cannot be parsed.
    """
    if config is None:
        return None
    if isinstance(config, str):
        try:
            return tomllib.loads(config)
        except tomllib.TOMLDecodeError as te:
            raise ValueError(f"invalid TOML component config: {te}") from te
    if isinstance(config, dict):
        return config
    logger.warning("Ignoring component config of unexpected type %s", type(config).__name__)
    return None


def config_get(config: Optional[Dict[str, Any]], key: str) -> Any:
    """Look up a dotted key in a component config.

    Both nested tables and literal dotted keys are accepted.
    """
    if not config:
        return None
    if key in config:
        return config[key]
    head, sep, rest = key.partition(".")
    while sep:
        value = config.get(head)
        if isinstance(value, dict):
            found = config_get(value, rest)
            if found is not None:
                return found
        next_part, sep, rest = rest.partition(".")
        head = f"{head}.{next_part}"
    return None


def tikv_labels(tc: TidbCluster) -> Dict[str, str]:
    """Return the labels selecting the TiKV pods and volumes of the cluster."""
    return {
        LABEL_NAME: LABEL_VALUE_CLUSTER,
        LABEL_MANAGED_BY: LABEL_VALUE_OPERATOR,
        LABEL_INSTANCE: tc.metadata.name,
        LABEL_COMPONENT: LABEL_VALUE_TIKV,
    }
