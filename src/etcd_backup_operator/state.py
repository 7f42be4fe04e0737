from __future__ import annotations

from kubernetes import client

from .k8s import read_or_none
from .models import (
    BACKUP_API_VERSION,
    BACKUP_GROUP,
    BACKUP_KIND,
    BACKUP_PLURAL,
    BACKUP_VERSION,
    BackupRequest,
    ObservedState,
    RequestKey,
)

WORKER_CONTAINER_NAME = "etcd-backup"
WORKER_APP_NAME = "etcd-backup"
MANAGED_BY = "etcd-backup-operator"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
WORKER_LABEL_SELECTOR = f"{MANAGED_BY_LABEL}={MANAGED_BY}"
WORKER_RESOURCE_REQUESTS = {"cpu": "100m", "memory": "100Mi"}
WORKER_RESOURCE_LIMITS = {"cpu": "500m", "memory": "500Mi"}


class StateReader:
    def __init__(self, *, core_api: client.CoreV1Api, custom_api: client.CustomObjectsApi) -> None:
        self.core_api = core_api
        self.custom_api = custom_api

    def read(self, key: RequestKey) -> ObservedState:
        raw_request = read_or_none(
            operation=f"get {BACKUP_KIND} '{key}'",
            func=lambda: self.custom_api.get_namespaced_custom_object(
                group=BACKUP_GROUP,
                version=BACKUP_VERSION,
                namespace=key.namespace,
                plural=BACKUP_PLURAL,
                name=key.name,
            ),
        )
        if raw_request is None:
            return ObservedState(request=None)

        request = BackupRequest.from_object(raw_request)
        actual_worker = read_or_none(
            operation=f"get worker pod '{key}'",
            func=lambda: self.core_api.read_namespaced_pod(name=key.name, namespace=key.namespace),
        )
        return ObservedState(
            request=request,
            actual_worker=actual_worker,
            desired_worker=desired_worker_for(request),
        )


def desired_worker_for(request: BackupRequest) -> client.V1Pod:
    """Build the worker pod for a request.

    The result depends only on the request's identity and spec, so two calls for
    the same request compare equal. The controller owner reference lets the
    garbage collector delete the pod together with its EtcdBackup.
    """
    return client.V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=client.V1ObjectMeta(
            name=request.name,
            namespace=request.namespace,
            labels=worker_labels(request),
            owner_references=[
                client.V1OwnerReference(
                    api_version=BACKUP_API_VERSION,
                    kind=BACKUP_KIND,
                    name=request.name,
                    uid=request.uid,
                    controller=True,
                    block_owner_deletion=True,
                )
            ],
        ),
        spec=client.V1PodSpec(
            restart_policy="Never",
            containers=[
                client.V1Container(
                    name=WORKER_CONTAINER_NAME,
                    image=request.image,
                    args=["--etcd-endpoints", request.endpoints],
                    resources=client.V1ResourceRequirements(
                        requests=dict(WORKER_RESOURCE_REQUESTS),
                        limits=dict(WORKER_RESOURCE_LIMITS),
                    ),
                )
            ],
        ),
    )


def worker_labels(request: BackupRequest) -> dict[str, str]:
    return {
        "app.kubernetes.io/name": WORKER_APP_NAME,
        "app.kubernetes.io/instance": _label_value(request.name),
        MANAGED_BY_LABEL: MANAGED_BY,
    }


def _label_value(value: str, max_length: int = 63) -> str:
    # Object names may be up to 253 characters; label values are capped at 63.
    if len(value) <= max_length:
        return value
    return value[:max_length].rstrip("-.")
