# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Restore condition ledger.

Conditions are handled as a mapping from condition type to condition. The
progress order of the types is only used to refuse regressions: once a later
progress condition is true, an earlier one is never set to true again.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.types import PatchType

from k8s_utils import k8s_retry_on_conflict

from .crds.restore import (
    Restore,
    RestoreCondition,
    RestoreConditionType,
    RestoreStatusModel,
    is_condition_true,
)
from .errors import ConditionUpdateError

logger = logging.getLogger(__name__)

PROGRESS_ORDER: Dict[str, int] = {
    RestoreConditionType.SCHEDULED.value: 1,
    RestoreConditionType.RUNNING.value: 2,
    RestoreConditionType.VOLUME_COMPLETE.value: 3,
    RestoreConditionType.TIKV_COMPLETE.value: 4,
    RestoreConditionType.COMPLETE.value: 5,
}

# Failure signals are recorded next to the progress conditions and never become the phase.
NON_PHASE_TYPES = {
    RestoreConditionType.RETRY_FAILED.value,
    RestoreConditionType.INVALID.value,
    RestoreConditionType.FAILED.value,
}


@dataclass
class RestoreUpdateStatus:
    """Status fields updated together with a condition."""

    time_started: Optional[str] = None
    time_completed: Optional[str] = None
    commit_ts: Optional[str] = None


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def new_condition(
    condition_type: RestoreConditionType,
    status: bool = True,
    reason: Optional[str] = None,
    message: Optional[str] = None,
) -> RestoreCondition:
    """Build a restore condition."""
    return RestoreCondition(
        type=condition_type.value,
        status="True" if status else "False",
        reason=reason,
        message=message,
    )


def is_regression(conditions: Dict[str, RestoreCondition], condition: RestoreCondition) -> bool:
    """Return True if setting the condition would move the restore progress backwards."""
    order = PROGRESS_ORDER.get(condition.type)
    if order is None or condition.status != "True":
        return False
    if condition.type == RestoreConditionType.SCHEDULED.value:
        existing = conditions.get(condition.type)
        if existing is not None and existing.status == "True":
            return True
    return any(
        PROGRESS_ORDER.get(other.type, 0) > order and other.status == "True"
        for other in conditions.values()
    )


def merge_condition(status: RestoreStatusModel, condition: RestoreCondition) -> bool:
    """Merge a condition into the restore status.

    Args:
        status (RestoreStatusModel): The status to update in place.
        condition (RestoreCondition): The condition to record.

    Returns:
        bool: True if the status changed.
    """
    conditions = {c.type: c for c in status.conditions or []}
    if is_regression(conditions, condition):
        logger.info(
            "Skipping condition %s=%s, the restore already progressed further",
            condition.type,
            condition.status,
        )
        return False

    old = conditions.get(condition.type)
    merged = RestoreCondition(
        type=condition.type,
        status=condition.status,
        reason=condition.reason,
        message=condition.message,
        lastTransitionTime=_now(),
    )
    if old is not None and old.status == merged.status:
        merged.lastTransitionTime = old.lastTransitionTime
    changed = old is None or (old.status, old.reason, old.message) != (
        merged.status,
        merged.reason,
        merged.message,
    )
    conditions[condition.type] = merged
    status.conditions = list(conditions.values())

    if (
        merged.status == "True"
        and merged.type not in NON_PHASE_TYPES
        and status.phase != merged.type
    ):
        status.phase = merged.type
        changed = True
    return changed


def merge_status(status: RestoreStatusModel, new_status: Optional[RestoreUpdateStatus]) -> bool:
    """Merge the optional status fields into the restore status."""
    if new_status is None:
        return False
    changed = False
    for attr, value in (
        ("timeStarted", new_status.time_started),
        ("timeCompleted", new_status.time_completed),
        ("commitTs", new_status.commit_ts),
    ):
        if value is not None and getattr(status, attr) != value:
            setattr(status, attr, value)
            changed = True
    return changed


class RestoreConditionUpdater:
    """Persist restore conditions on the Restore status sub-resource."""

    def __init__(self, kube_client: Client) -> None:
        self._kube_client = kube_client

    def update(
        self,
        restore: Restore,
        condition: RestoreCondition,
        new_status: Optional[RestoreUpdateStatus] = None,
    ) -> None:
        """Record a condition on the restore.

        The latest restore is read before every attempt and written with its
        resource version, so concurrent writers surface as conflicts that are
        retried. The restore object passed in receives the persisted status.

        Args:
            restore (Restore): The restore to update.
            condition (RestoreCondition): The condition to record.
            new_status (Optional[RestoreUpdateStatus]): Extra status fields to record.

        Raises:
            ConditionUpdateError: If the restore status cannot be persisted.
        """
        namespace = restore.metadata.namespace
        name = restore.metadata.name

        def read_merge_write() -> RestoreStatusModel:
            latest = self._kube_client.get(Restore, name=name, namespace=namespace)
            status = latest.status or RestoreStatusModel()
            status_changed = merge_status(status, new_status)
            condition_changed = merge_condition(status, condition)
            if status_changed or condition_changed:
                self._kube_client.patch(
                    Restore.Status,
                    name,
                    {
                        "metadata": {"resourceVersion": latest.metadata.resourceVersion},
                        "status": status.to_dict(),
                    },
                    namespace=namespace,
                    patch_type=PatchType.MERGE,
                )
                logger.info(
                    "Restore %s/%s condition %s=%s recorded",
                    namespace,
                    name,
                    condition.type,
                    condition.status,
                )
            return status

        try:
            restore.status = k8s_retry_on_conflict(read_merge_write)
        except ApiError as ae:
            logger.error("Failed to update restore %s/%s status: %s", namespace, name, ae)
            raise ConditionUpdateError(
                "UpdateRestoreConditionFailed",
                f"failed to record condition {condition.type} on restore {namespace}/{name}",
            ) from ae


def is_restore_scheduled(restore: Restore) -> bool:
    """Return True if the restore job has been scheduled."""
    return is_condition_true(restore, RestoreConditionType.SCHEDULED)


def is_restore_volume_complete(restore: Restore) -> bool:
    """Return True if the volume stage of the restore completed."""
    return is_condition_true(restore, RestoreConditionType.VOLUME_COMPLETE)


def is_restore_tikv_complete(restore: Restore) -> bool:
    """Return True if the TiKV restart stage of the restore completed."""
    return is_condition_true(restore, RestoreConditionType.TIKV_COMPLETE)


def is_restore_complete(restore: Restore) -> bool:
    """Return True if the restore completed."""
    return is_condition_true(restore, RestoreConditionType.COMPLETE)


def is_restore_invalid(restore: Restore) -> bool:
    """Return True if the restore was marked invalid."""
    return is_condition_true(restore, RestoreConditionType.INVALID)
