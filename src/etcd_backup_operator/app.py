from __future__ import annotations

from pathlib import Path
from typing import Any
import os
import re

from kubernetes import client
from kubernetes.client import ApiException
import streamlit as st
import yaml

from etcd_backup_operator.config import OperatorConfig
from etcd_backup_operator.k8s import (
    KubernetesClients,
    format_api_exception_message,
    load_kubernetes_clients,
)
from etcd_backup_operator.models import (
    BACKUP_API_VERSION,
    BACKUP_GROUP,
    BACKUP_KIND,
    BACKUP_PLURAL,
    BACKUP_VERSION,
    PHASE_BACKING_UP,
    PHASE_COMPLETED,
    PHASE_FAILED,
    PHASE_UNSET,
    BackupRequest,
    RequestKey,
    worker_phase,
)
from etcd_backup_operator.state import WORKER_LABEL_SELECTOR, desired_worker_for

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_SERVICEACCOUNT_TOKEN_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/token"
_DNS_SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_DNS_LABEL_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

_PHASE_HINTS = {
    PHASE_UNSET: "Waiting for the operator to pick up the request. Check that the operator Deployment is running.",
    PHASE_BACKING_UP: "Worker pod is running the backup. Follow its logs with kubectl logs.",
    PHASE_FAILED: "Inspect the worker pod logs, then delete and recreate the request to retry.",
    PHASE_COMPLETED: "No follow-up action required.",
}


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "clients": None,
        "backup_requests": [],
        "worker_phases": {},
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _display_phase(phase: str) -> str:
    return phase or "New"


def _next_step(phase: str, worker_phase_value: str | None) -> str:
    if phase == PHASE_BACKING_UP and worker_phase_value is None:
        return "Worker pod not created yet. Check operator logs and RBAC for pod creation."
    return _PHASE_HINTS.get(phase, "Unknown phase. Inspect the EtcdBackup object with kubectl describe.")


def _build_request_rows(
    requests: list[BackupRequest],
    worker_phases: dict[RequestKey, str],
) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for request in sorted(requests, key=lambda item: item.key):
        worker_phase_value = worker_phases.get(request.key)
        phase = request.phase
        if request.deletion_requested:
            phase_label = "Deleting"
        else:
            phase_label = _display_phase(phase)
        rows.append(
            {
                "namespace": request.namespace,
                "name": request.name,
                "phase": phase_label,
                "worker": worker_phase_value or "none",
                "image": request.image,
                "endpoints": request.endpoints,
                "next_step": _next_step(phase, worker_phase_value),
            }
        )
    return rows


def _normalize_endpoints(endpoints_input: str) -> str:
    return ",".join(value.strip() for value in endpoints_input.split(",") if value.strip())


def _validate_backup_inputs(*, name: str, namespace: str, image: str, endpoints_input: str) -> list[str]:
    errors: list[str] = []
    if not name.strip():
        errors.append("Backup name is required.")
    elif len(name.strip()) > 253 or not _DNS_SUBDOMAIN_PATTERN.match(name.strip()):
        errors.append("Backup name must be a lowercase DNS subdomain (letters, digits, '-' and '.').")
    if not namespace.strip():
        errors.append("Namespace is required.")
    elif len(namespace.strip()) > 63 or not _DNS_LABEL_PATTERN.match(namespace.strip()):
        errors.append("Namespace must be a lowercase DNS label.")
    if not image.strip():
        errors.append("Backup image is required.")
    if not _normalize_endpoints(endpoints_input):
        errors.append("At least one etcd endpoint is required.")
    return errors


def _build_backup_object(*, name: str, namespace: str, image: str, endpoints_input: str) -> dict[str, Any]:
    return {
        "apiVersion": BACKUP_API_VERSION,
        "kind": BACKUP_KIND,
        "metadata": {"name": name.strip(), "namespace": namespace.strip()},
        "spec": {"image": image.strip(), "endpoints": _normalize_endpoints(endpoints_input)},
    }


def _render_worker_manifest(api_client: client.ApiClient, request: BackupRequest) -> str:
    manifest = api_client.sanitize_for_serialization(desired_worker_for(request))
    return yaml.safe_dump(manifest, sort_keys=False)


def _list_backup_requests(clients: KubernetesClients, namespace: str | None) -> list[BackupRequest]:
    if namespace:
        response = clients.custom_api.list_namespaced_custom_object(
            group=BACKUP_GROUP,
            version=BACKUP_VERSION,
            namespace=namespace,
            plural=BACKUP_PLURAL,
        )
    else:
        response = clients.custom_api.list_cluster_custom_object(
            group=BACKUP_GROUP,
            version=BACKUP_VERSION,
            plural=BACKUP_PLURAL,
        )
    return [BackupRequest.from_object(item) for item in response.get("items", [])]


def _list_worker_phases(clients: KubernetesClients, namespace: str | None) -> dict[RequestKey, str]:
    if namespace:
        pods = clients.core_api.list_namespaced_pod(namespace=namespace, label_selector=WORKER_LABEL_SELECTOR)
    else:
        pods = clients.core_api.list_pod_for_all_namespaces(label_selector=WORKER_LABEL_SELECTOR)
    return {
        RequestKey(namespace=pod.metadata.namespace, name=pod.metadata.name): worker_phase(pod)
        for pod in pods.items
        if pod.metadata is not None
    }


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_IN_CLUSTER:
        if not _is_incluster_service_account_environment():
            return (
                "In-cluster service account mode requires Kubernetes pod environment variables and the "
                "service-account token mount."
            )
        return None

    path_value = kubeconfig_path_input.strip()
    if not path_value:
        return "Kubeconfig path is required when using kubeconfig path authentication."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to an existing file: {expanded_path}"
    try:
        parsed = yaml.safe_load(expanded_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error}"
    except yaml.YAMLError as error:
        return f"Kubeconfig file '{expanded_path}' must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict) or not parsed.get("contexts"):
        return f"Kubeconfig file '{expanded_path}' must define at least one context."
    return None


def _default_auth_mode() -> str:
    configured_default = os.getenv("EBO_DEFAULT_AUTH_MODE", "").strip().lower()
    if configured_default in {"kubeconfig", "kubeconfig_path", "path"}:
        return _AUTH_MODE_USE_KUBECONFIG_PATH
    if configured_default in {"in-cluster", "in_cluster", "serviceaccount", "service-account"}:
        return _AUTH_MODE_IN_CLUSTER
    if _is_incluster_service_account_environment():
        return _AUTH_MODE_IN_CLUSTER
    return _AUTH_MODE_USE_KUBECONFIG_PATH


def _is_incluster_service_account_environment() -> bool:
    return bool(os.getenv("KUBERNETES_SERVICE_HOST") and Path(_SERVICEACCOUNT_TOKEN_PATH).exists())


def _render_sidebar() -> None:
    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_IN_CLUSTER]
    auth_mode = st.sidebar.radio(
        "Authentication",
        options=auth_options,
        index=auth_options.index(_default_auth_mode()),
    )
    kubeconfig_path_input = ""
    context = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value="~/.kube/config")
        context = st.sidebar.text_input("Kubernetes context (optional)", value="")

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
        )
        if connection_error:
            st.sidebar.error(connection_error)
            return
        try:
            st.session_state.clients = load_kubernetes_clients(
                kubeconfig_path=str(Path(kubeconfig_path_input).expanduser()) if kubeconfig_path_input else None,
                context=context or None,
                in_cluster=auth_mode == _AUTH_MODE_IN_CLUSTER,
            )
            st.session_state.connected = True
            st.session_state.backup_requests = []
            st.session_state.worker_phases = {}
            st.sidebar.success("Connected to Kubernetes cluster.")
        except Exception as error:  # pylint: disable=broad-except
            st.session_state.connected = False
            st.session_state.clients = None
            st.sidebar.error(f"Connection failed: {error}")

    if st.sidebar.button("Disconnect"):
        st.session_state.connected = False
        st.session_state.clients = None
        st.session_state.backup_requests = []
        st.session_state.worker_phases = {}


def main() -> None:
    st.set_page_config(page_title="etcd Backup Operator", layout="wide")
    _initialize_state()
    base_config = OperatorConfig()

    st.title("etcd Backup Operator")
    st.caption("Create EtcdBackup requests and follow them from BackingUp to Completed or Failed.")
    _render_sidebar()

    if not st.session_state.connected or st.session_state.clients is None:
        st.info("Connect to a cluster from the sidebar to list and create backup requests.")
        return

    clients: KubernetesClients = st.session_state.clients
    namespace_filter = st.text_input(
        "Namespace (optional)",
        value=base_config.watch_namespace or "",
        help="Leave blank to list backup requests across all namespaces.",
    ).strip()

    st.subheader("Backup Requests")
    if st.button("Refresh backup requests"):
        try:
            st.session_state.backup_requests = _list_backup_requests(clients, namespace_filter or None)
            st.session_state.worker_phases = _list_worker_phases(clients, namespace_filter or None)
        except ApiException as error:
            st.error(format_api_exception_message(operation="list backup requests", error=error))

    requests: list[BackupRequest] = st.session_state.backup_requests
    if requests:
        st.dataframe(
            _build_request_rows(requests, st.session_state.worker_phases),
            use_container_width=True,
            hide_index=True,
        )
    else:
        st.info("No backup requests loaded. Click 'Refresh backup requests'.")

    st.subheader("New Backup Request")
    with st.form("new-backup-request"):
        name = st.text_input("Name", value="")
        namespace = st.text_input("Namespace", value=namespace_filter or "default")
        image = st.text_input("Backup image", value=base_config.default_backup_image)
        endpoints_input = st.text_input("etcd endpoints (comma-separated)", value="")
        submitted = st.form_submit_button("Create backup request")

    if submitted:
        errors = _validate_backup_inputs(name=name, namespace=namespace, image=image, endpoints_input=endpoints_input)
        if errors:
            for error_message in errors:
                st.error(error_message)
        else:
            body = _build_backup_object(name=name, namespace=namespace, image=image, endpoints_input=endpoints_input)
            try:
                clients.custom_api.create_namespaced_custom_object(
                    group=BACKUP_GROUP,
                    version=BACKUP_VERSION,
                    namespace=body["metadata"]["namespace"],
                    plural=BACKUP_PLURAL,
                    body=body,
                )
                st.success(f"Created EtcdBackup {body['metadata']['namespace']}/{body['metadata']['name']}.")
            except ApiException as error:
                st.error(format_api_exception_message(operation="create backup request", error=error))

    if requests:
        st.subheader("Worker Preview")
        labels = [str(request.key) for request in requests]
        selected = st.selectbox("Backup request", options=labels)
        request = requests[labels.index(selected)]
        st.code(_render_worker_manifest(clients.api_client, request), language="yaml")


if __name__ == "__main__":
    main()
