from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from kubernetes import client

BACKUP_GROUP = "etcd.oschina.cn"
BACKUP_VERSION = "v1alpha1"
BACKUP_API_VERSION = f"{BACKUP_GROUP}/{BACKUP_VERSION}"
BACKUP_KIND = "EtcdBackup"
BACKUP_PLURAL = "etcdbackups"

PHASE_UNSET = ""
PHASE_BACKING_UP = "BackingUp"
PHASE_FAILED = "Failed"
PHASE_COMPLETED = "Completed"
TERMINAL_PHASES = frozenset({PHASE_FAILED, PHASE_COMPLETED})

WORKER_PHASE_PENDING = "Pending"
WORKER_PHASE_RUNNING = "Running"
WORKER_PHASE_SUCCEEDED = "Succeeded"
WORKER_PHASE_FAILED = "Failed"


@dataclass(frozen=True, order=True)
class RequestKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class BackupRequest:
    name: str
    namespace: str
    uid: str
    resource_version: str
    image: str
    endpoints: str
    phase: str = PHASE_UNSET
    deletion_requested: bool = False

    @property
    def key(self) -> RequestKey:
        return RequestKey(namespace=self.namespace, name=self.name)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> BackupRequest:
        """Parse an EtcdBackup custom object as returned by the CustomObjectsApi."""
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            uid=metadata.get("uid", ""),
            resource_version=metadata.get("resourceVersion", ""),
            image=spec.get("image", ""),
            endpoints=spec.get("endpoints", ""),
            phase=status.get("phase") or PHASE_UNSET,
            deletion_requested=bool(metadata.get("deletionTimestamp")),
        )


@dataclass(frozen=True)
class ObservedState:
    """Snapshot rebuilt from the control plane on every reconcile."""

    request: BackupRequest | None
    actual_worker: client.V1Pod | None = None
    desired_worker: client.V1Pod | None = None


def worker_phase(pod: client.V1Pod) -> str:
    if pod.status and pod.status.phase:
        return pod.status.phase
    return WORKER_PHASE_PENDING
