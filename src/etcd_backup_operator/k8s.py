from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

T = TypeVar("T")

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_GONE = 410


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class ControlPlaneError(RuntimeError):
    """Raised when a control-plane call fails and the reconcile must be retried by the caller."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class StatusConflictError(ControlPlaneError):
    """Raised when a status patch loses an optimistic-concurrency race."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    """Build API clients bound to a single credential source.

    Every call gets its own client configuration; the process-wide default is left untouched.
    """
    config_file = _normalize_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            configuration = client.Configuration()
            config.load_incluster_config(client_configuration=configuration)
            api_client = client.ApiClient(configuration)
        else:
            api_client = config.new_client_from_config(config_file=config_file, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _describe_auth_failure(in_cluster=in_cluster, config_file=config_file, context=context, error=error)
        ) from error

    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


def read_or_none(*, operation: str, func: Callable[[], T]) -> T | None:
    """Run a read call, mapping 404 to None and every other failure to ControlPlaneError."""
    try:
        return func()
    except ApiException as error:
        if error.status == HTTP_NOT_FOUND:
            return None
        raise ControlPlaneError(
            format_api_exception_message(operation=operation, error=error),
            status=error.status,
        ) from error
    except Exception as error:
        raise ControlPlaneError(f"Control-plane call failed while trying to {operation}: {error}") from error


def format_api_exception_message(*, operation: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Control-plane call failed while trying to {operation}: API status {status} ({reason})."


def _normalize_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if not kubeconfig_path or not kubeconfig_path.strip():
        return None
    return str(Path(kubeconfig_path.strip()).expanduser())


def _describe_auth_failure(
    *,
    in_cluster: bool,
    config_file: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or type(error).__name__
    if in_cluster:
        return (
            f"Could not load the operator service account: {reason}. "
            "Mount a service account token bound to the etcd-backup-operator ClusterRole."
        )
    source = config_file or "the default kubeconfig location"
    context_part = f" (context '{context}')" if context else ""
    return f"Could not load kubeconfig from {source}{context_part}: {reason}. Check the path and context name."
