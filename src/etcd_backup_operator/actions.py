from __future__ import annotations

from dataclasses import dataclass
import logging

from kubernetes import client
from kubernetes.client import ApiException

from .k8s import HTTP_CONFLICT, ControlPlaneError, StatusConflictError, format_api_exception_message
from .models import BACKUP_GROUP, BACKUP_PLURAL, BACKUP_VERSION, BackupRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoAction:
    reason: str

    def describe(self) -> str:
        return f"no action ({self.reason})"


@dataclass(frozen=True)
class CreateObject:
    obj: client.V1Pod

    def describe(self) -> str:
        return f"create worker pod {self.obj.metadata.namespace}/{self.obj.metadata.name}"


@dataclass(frozen=True)
class PatchStatus:
    original: BackupRequest
    updated: BackupRequest

    def describe(self) -> str:
        return f"patch status phase {self.original.phase or '<unset>'} -> {self.updated.phase}"


Action = NoAction | CreateObject | PatchStatus


class ActionExecutor:
    def __init__(self, *, core_api: client.CoreV1Api, custom_api: client.CustomObjectsApi) -> None:
        self.core_api = core_api
        self.custom_api = custom_api

    def execute(self, action: Action) -> None:
        if isinstance(action, CreateObject):
            self._create_object(action.obj)
        elif isinstance(action, PatchStatus):
            self._patch_status(original=action.original, updated=action.updated)
        elif not isinstance(action, NoAction):
            raise TypeError(f"unsupported action: {action!r}")

    def _create_object(self, pod: client.V1Pod) -> None:
        namespace = pod.metadata.namespace
        name = pod.metadata.name
        try:
            self.core_api.create_namespaced_pod(namespace=namespace, body=pod)
        except ApiException as error:
            if error.status == HTTP_CONFLICT:
                # Two overlapping reconciles can both observe "no worker"; the
                # loser's create is a no-op because the pod name is the request name.
                logger.info("Worker pod %s/%s already exists; treating create as done", namespace, name)
                return
            raise ControlPlaneError(
                format_api_exception_message(operation=f"create worker pod '{namespace}/{name}'", error=error),
                status=error.status,
            ) from error
        except Exception as error:
            raise ControlPlaneError(
                f"Control-plane call failed while trying to create worker pod '{namespace}/{name}': {error}"
            ) from error

    def _patch_status(self, *, original: BackupRequest, updated: BackupRequest) -> None:
        operation = f"patch status of '{original.key}' to phase '{updated.phase}'"
        try:
            self.custom_api.patch_namespaced_custom_object_status(
                group=BACKUP_GROUP,
                version=BACKUP_VERSION,
                namespace=original.namespace,
                plural=BACKUP_PLURAL,
                name=original.name,
                body=status_patch_body(original=original, updated=updated),
            )
        except ApiException as error:
            message = format_api_exception_message(operation=operation, error=error)
            if error.status == HTTP_CONFLICT:
                logger.warning("Status patch for %s lost a version race: %s", original.key, message)
                raise StatusConflictError(message, status=error.status) from error
            raise ControlPlaneError(message, status=error.status) from error
        except Exception as error:
            raise ControlPlaneError(f"Control-plane call failed while trying to {operation}: {error}") from error


def status_patch_body(*, original: BackupRequest, updated: BackupRequest) -> dict:
    """Build a merge patch that only applies if the object still has the original's resourceVersion."""
    body: dict = {"status": {"phase": updated.phase}}
    if original.resource_version:
        body["metadata"] = {"resourceVersion": original.resource_version}
    return body
