"""Event delivery for the EtcdBackup reconciler, built on kopf.

Every watch event for an EtcdBackup, and for a worker pod it controls, turns
into one reconcile of the backup's key. A timer re-reconciles unfinished
backups, and kopf retries a failed timer pass after the configured delay.
Reconciles for the same key never overlap.
"""

from __future__ import annotations

from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
import threading
from typing import Any, Iterator

import kopf
from kubernetes import client

from .actions import ActionExecutor
from .config import OperatorConfig, configure_logging, validate_config
from .k8s import ControlPlaneError, KubernetesClients, load_kubernetes_clients
from .models import BACKUP_GROUP, BACKUP_KIND, BACKUP_PLURAL, BACKUP_VERSION, TERMINAL_PHASES, RequestKey
from .reconciler import Reconciler
from .state import MANAGED_BY, MANAGED_BY_LABEL, StateReader

logger = logging.getLogger(__name__)

OPERATOR_FINALIZER = f"{BACKUP_GROUP}/operator"


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class KeyLocks:
    """Serializes reconciles per request key.

    kopf runs handlers for the backup and for its worker pod independently, and
    both feed the same key.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[RequestKey, _KeyLock] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: RequestKey) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, _KeyLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]


def request_key_for(meta: Mapping[str, Any]) -> RequestKey | None:
    name = meta.get("name")
    namespace = meta.get("namespace")
    if not name or not namespace:
        return None
    return RequestKey(namespace=namespace, name=name)


def owner_key_for(meta: Mapping[str, Any]) -> RequestKey | None:
    """Map a worker pod's metadata to the EtcdBackup that controls it."""
    namespace = meta.get("namespace")
    if not namespace:
        return None
    for owner_ref in meta.get("ownerReferences") or []:
        api_version = owner_ref.get("apiVersion") or ""
        if (
            owner_ref.get("controller")
            and owner_ref.get("kind") == BACKUP_KIND
            and api_version.split("/")[0] == BACKUP_GROUP
            and owner_ref.get("name")
        ):
            return RequestKey(namespace=namespace, name=owner_ref["name"])
    return None


def reconcile_key(memo: Any, key: RequestKey) -> None:
    with memo.key_locks.hold(key):
        try:
            memo.reconciler.reconcile(key)
        except ControlPlaneError as error:
            raise kopf.TemporaryError(str(error), delay=memo.config.retry_delay_seconds) from error


def on_backup_event(meta: Mapping[str, Any], memo: Any, **_: Any) -> None:
    key = request_key_for(meta)
    if key is not None:
        reconcile_key(memo, key)


def on_worker_event(meta: Mapping[str, Any], memo: Any, **_: Any) -> None:
    key = owner_key_for(meta)
    if key is not None:
        reconcile_key(memo, key)


def resync_backup(meta: Mapping[str, Any], memo: Any, **_: Any) -> None:
    on_backup_event(meta, memo)


def needs_resync(status: Mapping[str, Any] | None, **_: Any) -> bool:
    return (status or {}).get("phase") not in TERMINAL_PHASES


def configure_operator(settings: kopf.OperatorSettings, memo: Any, **_: Any) -> None:
    config: OperatorConfig = memo.config
    settings.posting.enabled = False
    settings.execution.max_workers = config.worker_count
    settings.watching.server_timeout = config.watch_timeout_seconds
    settings.persistence.finalizer = OPERATOR_FINALIZER
    logger.info(
        "Operator starting for %s with %d worker(s)",
        config.watch_namespace or "all namespaces",
        config.worker_count,
    )


def login(memo: Any, **_: Any) -> kopf.ConnectionInfo:
    return connection_info_for(memo.clients.api_client.configuration)


def connection_info_for(configuration: client.Configuration) -> kopf.ConnectionInfo:
    """Hand the credentials already loaded into the kubernetes client over to kopf."""
    header = (configuration.api_key or {}).get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if not token:
        scheme, token = "", header
    return kopf.ConnectionInfo(
        server=configuration.host,
        ca_path=configuration.ssl_ca_cert,
        insecure=not configuration.verify_ssl,
        username=configuration.username or None,
        password=configuration.password or None,
        scheme=scheme or None,
        token=token or None,
        certificate_path=configuration.cert_file,
        private_key_path=configuration.key_file,
    )


def build_registry(config: OperatorConfig) -> kopf.OperatorRegistry:
    registry = kopf.OperatorRegistry()
    kopf.on.startup(registry=registry)(configure_operator)
    kopf.on.login(registry=registry)(login)
    kopf.on.event(BACKUP_GROUP, BACKUP_VERSION, BACKUP_PLURAL, registry=registry)(on_backup_event)
    kopf.on.event("v1", "pods", labels={MANAGED_BY_LABEL: MANAGED_BY}, registry=registry)(on_worker_event)
    kopf.timer(
        BACKUP_GROUP,
        BACKUP_VERSION,
        BACKUP_PLURAL,
        interval=config.resync_interval_seconds,
        initial_delay=config.resync_interval_seconds,
        backoff=config.retry_delay_seconds,
        when=needs_resync,
        registry=registry,
    )(resync_backup)
    return registry


def build_memo(clients: KubernetesClients, config: OperatorConfig) -> kopf.Memo:
    reconciler = Reconciler(
        reader=StateReader(core_api=clients.core_api, custom_api=clients.custom_api),
        executor=ActionExecutor(core_api=clients.core_api, custom_api=clients.custom_api),
    )
    return kopf.Memo(config=config, clients=clients, reconciler=reconciler, key_locks=KeyLocks())


def main() -> None:
    config = OperatorConfig()
    validate_config(config)
    configure_logging(config.log_level)

    clients = load_kubernetes_clients(
        kubeconfig_path=config.kubeconfig_path,
        context=config.context,
        in_cluster=config.in_cluster,
    )
    namespaces = [config.watch_namespace] if config.watch_namespace else []
    kopf.run(
        registry=build_registry(config),
        memo=build_memo(clients, config),
        standalone=True,
        clusterwide=not namespaces,
        namespaces=namespaces,
    )


if __name__ == "__main__":
    main()
