from __future__ import annotations

import copy
from unittest.mock import Mock

import pytest
from kubernetes import client
from kubernetes.client import ApiException

from etcd_backup_operator.actions import ActionExecutor, CreateObject, NoAction, PatchStatus
from etcd_backup_operator.k8s import ControlPlaneError, StatusConflictError
from etcd_backup_operator.models import RequestKey
from etcd_backup_operator.reconciler import Reconciler
from etcd_backup_operator.state import StateReader

_KEY = RequestKey(namespace="etcd", name="nightly")


class _FakeControlPlane:
    """In-memory stand-in for the CoreV1Api and CustomObjectsApi calls the reconciler makes."""

    def __init__(self) -> None:
        self.backups: dict[tuple[str, str], dict] = {}
        self.pods: dict[tuple[str, str], client.V1Pod] = {}
        self.mutations: list[str] = []
        self._version = 0

    def add_backup(self, *, name: str, namespace: str, endpoints: str, phase: str | None = None) -> None:
        obj = {
            "apiVersion": "etcd.oschina.cn/v1alpha1",
            "kind": "EtcdBackup",
            "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}"},
            "spec": {"image": "etcd-backup:1.0", "endpoints": endpoints},
        }
        if phase is not None:
            obj["status"] = {"phase": phase}
        self._bump(obj)
        self.backups[(namespace, name)] = obj

    def set_pod_phase(self, *, name: str, namespace: str, phase: str) -> None:
        self.pods[(namespace, name)].status = client.V1PodStatus(phase=phase)

    def get_namespaced_custom_object(self, *, group, version, namespace, plural, name):
        try:
            return copy.deepcopy(self.backups[(namespace, name)])
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def patch_namespaced_custom_object_status(self, *, group, version, namespace, plural, name, body):
        obj = self.backups[(namespace, name)]
        expected_version = body.get("metadata", {}).get("resourceVersion")
        if expected_version and expected_version != obj["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        obj.setdefault("status", {}).update(body["status"])
        self._bump(obj)
        self.mutations.append(f"patch {namespace}/{name} phase={body['status']['phase']}")
        return copy.deepcopy(obj)

    def read_namespaced_pod(self, *, name, namespace):
        try:
            return copy.deepcopy(self.pods[(namespace, name)])
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def create_namespaced_pod(self, *, namespace, body):
        key = (namespace, body.metadata.name)
        if key in self.pods:
            raise ApiException(status=409, reason="AlreadyExists")
        pod = copy.deepcopy(body)
        pod.status = client.V1PodStatus(phase="Pending")
        self.pods[key] = pod
        self.mutations.append(f"create pod {namespace}/{body.metadata.name}")
        return pod

    def _bump(self, obj: dict) -> None:
        self._version += 1
        obj["metadata"]["resourceVersion"] = str(self._version)


def _reconciler(plane: _FakeControlPlane) -> Reconciler:
    return Reconciler(
        reader=StateReader(core_api=plane, custom_api=plane),  # type: ignore[arg-type]
        executor=ActionExecutor(core_api=plane, custom_api=plane),  # type: ignore[arg-type]
    )


def test_reconcile_walks_backup_from_new_to_completed() -> None:
    plane = _FakeControlPlane()
    plane.add_backup(name="nightly", namespace="etcd", endpoints="10.0.0.1:2379")
    reconciler = _reconciler(plane)

    first = reconciler.reconcile(_KEY)
    assert isinstance(first, PatchStatus)
    assert first.updated.phase == "BackingUp"

    second = reconciler.reconcile(_KEY)
    assert isinstance(second, CreateObject)
    assert second.obj.spec.containers[0].args == ["--etcd-endpoints", "10.0.0.1:2379"]

    assert isinstance(reconciler.reconcile(_KEY), NoAction)

    plane.set_pod_phase(name="nightly", namespace="etcd", phase="Succeeded")
    third = reconciler.reconcile(_KEY)
    assert isinstance(third, PatchStatus)
    assert third.updated.phase == "Completed"

    assert reconciler.reconcile(_KEY) == NoAction("backup has completed")
    assert plane.mutations == [
        "patch etcd/nightly phase=BackingUp",
        "create pod etcd/nightly",
        "patch etcd/nightly phase=Completed",
    ]


def test_reconcile_with_failed_worker_ends_in_failed_phase() -> None:
    plane = _FakeControlPlane()
    plane.add_backup(name="nightly", namespace="etcd", endpoints="10.0.0.1:2379", phase="BackingUp")
    reconciler = _reconciler(plane)

    reconciler.reconcile(_KEY)
    plane.set_pod_phase(name="nightly", namespace="etcd", phase="Failed")
    reconciler.reconcile(_KEY)

    assert plane.backups[("etcd", "nightly")]["status"]["phase"] == "Failed"
    assert reconciler.reconcile(_KEY) == NoAction("backup has failed")


def test_reconcile_twice_without_external_change_acts_once() -> None:
    plane = _FakeControlPlane()
    plane.add_backup(name="nightly", namespace="etcd", endpoints="10.0.0.1:2379", phase="BackingUp")
    plane.create_namespaced_pod(
        namespace="etcd",
        body=client.V1Pod(metadata=client.V1ObjectMeta(name="nightly", namespace="etcd")),
    )
    plane.set_pod_phase(name="nightly", namespace="etcd", phase="Succeeded")
    plane.mutations.clear()
    reconciler = _reconciler(plane)

    first = reconciler.reconcile(_KEY)
    second = reconciler.reconcile(_KEY)

    assert isinstance(first, PatchStatus)
    assert isinstance(second, NoAction)
    assert plane.mutations == ["patch etcd/nightly phase=Completed"]


def test_reconcile_with_deleted_request_returns_no_action() -> None:
    plane = _FakeControlPlane()

    assert _reconciler(plane).reconcile(_KEY) == NoAction("backup object not found")
    assert plane.mutations == []


def test_reconcile_with_worker_created_by_overlapping_reconcile_succeeds() -> None:
    plane = _FakeControlPlane()
    plane.add_backup(name="nightly", namespace="etcd", endpoints="10.0.0.1:2379", phase="BackingUp")
    reconciler = _reconciler(plane)
    stale_read = plane.read_namespaced_pod

    def _read_then_lose_race(*, name, namespace):
        # The other reconcile creates the pod right after this one observed "no worker".
        try:
            return stale_read(name=name, namespace=namespace)
        finally:
            if (namespace, name) not in plane.pods:
                plane.create_namespaced_pod(
                    namespace=namespace,
                    body=client.V1Pod(metadata=client.V1ObjectMeta(name=name, namespace=namespace)),
                )

    plane.read_namespaced_pod = _read_then_lose_race  # type: ignore[method-assign]

    action = reconciler.reconcile(_KEY)

    assert isinstance(action, CreateObject)
    assert plane.mutations == ["create pod etcd/nightly"]


def test_reconcile_with_stale_snapshot_surfaces_status_conflict() -> None:
    plane = _FakeControlPlane()
    plane.add_backup(name="nightly", namespace="etcd", endpoints="10.0.0.1:2379")
    reconciler = _reconciler(plane)
    fresh_get = plane.get_namespaced_custom_object

    def _read_then_concurrent_update(**kwargs):
        snapshot = fresh_get(**kwargs)
        plane._bump(plane.backups[("etcd", "nightly")])
        return snapshot

    plane.get_namespaced_custom_object = _read_then_concurrent_update  # type: ignore[method-assign]

    with pytest.raises(StatusConflictError):
        reconciler.reconcile(_KEY)

    assert "status" not in plane.backups[("etcd", "nightly")]


def test_reconcile_with_read_failure_propagates_without_executing() -> None:
    reader = Mock()
    reader.read.side_effect = ControlPlaneError("Control-plane call failed", status=500)
    executor = Mock()

    with pytest.raises(ControlPlaneError):
        Reconciler(reader=reader, executor=executor).reconcile(_KEY)

    executor.execute.assert_not_called()


def test_reconcile_logs_rule_and_action(caplog: pytest.LogCaptureFixture) -> None:
    plane = _FakeControlPlane()
    plane.add_backup(name="nightly", namespace="etcd", endpoints="10.0.0.1:2379")

    with caplog.at_level("INFO", logger="etcd_backup_operator.reconciler"):
        _reconciler(plane).reconcile(_KEY)

    assert "Reconcile etcd/nightly: rule=start-backup" in caplog.text
