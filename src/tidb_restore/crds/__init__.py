# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""TiDB Operator CRDs module."""

from .restore import (
    FederalVolumeRestorePhase,
    Restore,
    RestoreCondition,
    RestoreConditionType,
    RestoreMode,
    RestoreModel,
    RestoreSpecModel,
    RestoreStatus,
    RestoreStatusModel,
)
from .tidbcluster import TidbCluster, TidbClusterModel, TidbClusterSpecModel

__all__ = [
    "Restore",
    "RestoreCondition",
    "RestoreConditionType",
    "RestoreMode",
    "FederalVolumeRestorePhase",
    "RestoreSpecModel",
    "RestoreStatusModel",
    "RestoreModel",
    "RestoreStatus",
    "TidbCluster",
    "TidbClusterModel",
    "TidbClusterSpecModel",
]
