# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Utility functions for Kubernetes operations."""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Type, TypeVar, Union

from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.core.resource import GlobalResource, NamespacedResource
from lightkube.models.meta_v1 import OwnerReference
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from constants import K8S_CONFLICT_RETRY_ATTEMPTS, K8S_CONFLICT_RETRY_DELAY

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class K8sResource:
    """Kubernetes resource reference."""

    name: str
    type: Type[Union[NamespacedResource, GlobalResource]]


def is_not_found(error: ApiError) -> bool:
    """Return True if the API error is a 404."""
    return error.status.code == 404


def is_conflict(error: BaseException) -> bool:
    """Return True if the error is an API conflict (409)."""
    return isinstance(error, ApiError) and error.status.code == 409


def k8s_get_or_none(kube_client: Client, resource: K8sResource, namespace: Optional[str] = None):
    """Get a Kubernetes resource, returning None if it does not exist.

    Args:
        kube_client (Client): The Kubernetes client used to interact with the cluster.
        resource (K8sResource): The resource to get.
        namespace (Optional[str]): The namespace of the resource.

    Returns:
        The resource object or None if it is not found.

    Raises:
        ValueError: If the resource type is neither a NamespacedResource nor a GlobalResource.
        ApiError: If the resource cannot be retrieved for any reason other than a 404.
    """
    try:
        if issubclass(resource.type, NamespacedResource):
            return kube_client.get(resource.type, name=resource.name, namespace=namespace)
        elif issubclass(resource.type, GlobalResource):
            return kube_client.get(resource.type, name=resource.name)
        else:  # pragma: no cover
            raise ValueError(f"Unknown resource type: {resource.type}")
    except ApiError as ae:
        if is_not_found(ae):
            logger.debug("Resource %s '%s' not found", resource.type.__name__, resource.name)
            return None
        raise ae


def k8s_resource_exists(kube_client: Client, resource: K8sResource, namespace: str) -> bool:
    """Check if a specified Kubernetes resource exists.

    Args:
        kube_client (Client): The Kubernetes client used to interact with the cluster.
        resource (K8sResource): The resource to check.
        namespace (str): The namespace of the resource.

    Returns:
        bool: True if the resource exists, False otherwise.

    Raises:
        ApiError: If the resource cannot be retrieved.
    """
    return k8s_get_or_none(kube_client, resource, namespace) is not None


def k8s_retry_on_conflict(
    func: Callable[[], T],
    *,
    attempts: int = K8S_CONFLICT_RETRY_ATTEMPTS,
    delay: float = K8S_CONFLICT_RETRY_DELAY,
) -> T:
    """Run an optimistic write, retrying it while the API server reports a conflict.

    The function is expected to re-read the object it writes on every call.

    Args:
        func (Callable[[], T]): The read-modify-write function.
        attempts (int): Maximum number of attempts.
        delay (float): Delay between attempts in seconds.

    Returns:
        The value returned by the last call of the function.

    Raises:
        ApiError: If the last attempt still fails.
    """
    for attempt in Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        retry=retry_if_exception(is_conflict),
        reraise=True,
    ):
        with attempt:
            result = func()
    return result


def owner_reference(obj, controller: bool = True) -> OwnerReference:
    """Build a controller owner reference pointing at a custom resource object."""
    return OwnerReference(
        apiVersion=obj.apiVersion,
        kind=obj.kind,
        name=obj.metadata.name,
        uid=obj.metadata.uid,
        controller=controller,
        blockOwnerDeletion=True,
    )
