# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Claim holding the data downloaded by the import job."""

import logging

from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.resources.core_v1 import PersistentVolumeClaim
from lightkube.utils.quantity import parse_quantity

from k8s_utils import K8sResource, k8s_get_or_none, owner_reference

from .crds.restore import Restore, restore_identity, restore_labels, restore_pvc_name
from .errors import PVCError, PVCTooSmallError

logger = logging.getLogger(__name__)


def _claim_size(pvc: PersistentVolumeClaim) -> str:
    requests = (pvc.spec.resources.requests if pvc.spec and pvc.spec.resources else None) or {}
    return requests.get("storage", "0")


def ensure_restore_pvc(kube_client: Client, restore: Restore, default_size: str) -> None:
    """Make sure the claim of the import job exists and is large enough.

    An existing claim is never resized: a claim smaller than requested must be
    deleted by the user.

    Args:
        kube_client (Client): The Kubernetes client used to interact with the cluster.
        restore (Restore): The simple restore owning the claim.
        default_size (str): The claim size used when the restore does not request one.

    Raises:
        PVCError: If the claim cannot be ensured.
    """
    namespace = restore.metadata.namespace
    identity = restore_identity(restore)
    size = restore.spec.storageSize or default_size
    try:
        requested = parse_quantity(size)
    except ValueError as ve:
        raise PVCError(
            "ParseStorageSizeFailed", f"restore {identity} parse storage size {size} failed: {ve}"
        ) from ve

    name = restore_pvc_name(restore)
    try:
        pvc = k8s_get_or_none(kube_client, K8sResource(name, PersistentVolumeClaim), namespace)
    except ApiError as ae:
        raise PVCError("GetPVCFailed", f"restore {identity} get pvc {name} failed: {ae}") from ae

    if pvc is not None:
        existing = _claim_size(pvc)
        try:
            current = parse_quantity(existing)
        except ValueError as ve:
            raise PVCError(
                "ParseStorageSizeFailed",
                f"restore {identity} parse size {existing} of pvc {name} failed: {ve}",
            ) from ve
        if current < requested:
            raise PVCTooSmallError(
                "PVCStorageSizeTooSmall",
                f"{identity}'s restore pvc {name}'s storage size {existing} is less than "
                f"expected storage size {size}, please delete old pvc to continue",
            )
        logger.debug("Restore pvc %s/%s already exists", namespace, name)
        return

    claim = PersistentVolumeClaim.from_dict(
        {
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": restore_labels(restore),
            },
            "spec": {
                "accessModes": ["ReadWriteOnce"],
                "resources": {"requests": {"storage": size}},
                "storageClassName": restore.spec.storageClassName,
            },
        }
    )
    claim.metadata.ownerReferences = [owner_reference(restore)]
    try:
        kube_client.create(claim)
    except ApiError as ae:
        logger.error("Failed to create restore pvc %s/%s: %s", namespace, name, ae)
        raise PVCError(
            "CreatePVCFailed", f"{identity} create restore pvc {name} failed: {ae}"
        ) from ae
    logger.info("Created restore pvc %s/%s of size %s", namespace, name, size)
