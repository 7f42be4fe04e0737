from __future__ import annotations

from pathlib import Path

import yaml

from etcd_backup_operator.models import BackupRequest
from etcd_backup_operator.state import desired_worker_for

_K8S_MANIFEST_DIR = Path("deploy/k8s")


def _read_yaml_document(relative_path: str) -> dict:
    return yaml.safe_load((_K8S_MANIFEST_DIR / relative_path).read_text(encoding="utf-8"))


def _cluster_role_rule_map() -> dict[tuple[str, str], set[str]]:
    cluster_role = _read_yaml_document("rbac/clusterrole.yaml")
    rule_map: dict[tuple[str, str], set[str]] = {}
    for rule in cluster_role["rules"]:
        for api_group in rule.get("apiGroups", [""]):
            for resource in rule.get("resources", []):
                rule_map.setdefault((api_group, resource), set()).update(rule.get("verbs", []))
    return rule_map


def test_crd_with_status_subresource_serves_expected_group_and_names() -> None:
    crd = _read_yaml_document("crd/etcdbackups.yaml")

    assert crd["metadata"]["name"] == "etcdbackups.etcd.oschina.cn"
    assert crd["spec"]["group"] == "etcd.oschina.cn"
    assert crd["spec"]["scope"] == "Namespaced"
    assert crd["spec"]["names"]["kind"] == "EtcdBackup"
    assert crd["spec"]["names"]["plural"] == "etcdbackups"
    (version,) = crd["spec"]["versions"]
    assert version["name"] == "v1alpha1"
    assert version["subresources"] == {"status": {}}


def test_crd_schema_with_phase_enum_matches_lifecycle_phases() -> None:
    (version,) = _read_yaml_document("crd/etcdbackups.yaml")["spec"]["versions"]
    properties = version["schema"]["openAPIV3Schema"]["properties"]

    assert properties["spec"]["required"] == ["image", "endpoints"]
    assert properties["status"]["properties"]["phase"]["enum"] == ["", "BackingUp", "Failed", "Completed"]
    assert [column["name"] for column in version["additionalPrinterColumns"]] == ["Image", "Endpoints", "Phase", "Age"]


def test_operator_clusterrole_with_least_privilege_has_expected_rule_set() -> None:
    rule_map = _cluster_role_rule_map()

    assert rule_map == {
        ("", "pods"): {"create", "delete", "get", "list", "patch", "update", "watch"},
        ("etcd.oschina.cn", "etcdbackups"): {"create", "get", "list", "patch", "update", "watch"},
        ("etcd.oschina.cn", "etcdbackups/status"): {"get", "patch", "update"},
        ("apiextensions.k8s.io", "customresourcedefinitions"): {"list", "watch"},
        ("", "namespaces"): {"list", "watch"},
    }
    assert all("*" not in verbs for verbs in rule_map.values())


def test_operator_binding_with_service_account_references_operator_role() -> None:
    binding = _read_yaml_document("rbac/clusterrolebinding.yaml")
    service_account = _read_yaml_document("rbac/serviceaccount.yaml")

    assert binding["roleRef"] == {
        "apiGroup": "rbac.authorization.k8s.io",
        "kind": "ClusterRole",
        "name": "etcd-backup-operator",
    }
    assert binding["subjects"] == [
        {
            "kind": "ServiceAccount",
            "name": service_account["metadata"]["name"],
            "namespace": service_account["metadata"]["namespace"],
        }
    ]


def test_operator_deployment_with_runtime_guardrails_runs_single_non_root_replica() -> None:
    deployment = _read_yaml_document("operator/deployment.yaml")
    pod_spec = deployment["spec"]["template"]["spec"]
    (container,) = pod_spec["containers"]
    env = {item["name"]: item["value"] for item in container["env"]}

    assert deployment["spec"]["replicas"] == 1
    assert pod_spec["serviceAccountName"] == "etcd-backup-operator"
    assert pod_spec["securityContext"]["runAsNonRoot"] is True
    assert container["command"] == ["etcd-backup-operator"]
    assert env["EBO_IN_CLUSTER"] == "true"
    assert container["securityContext"]["allowPrivilegeEscalation"] is False
    assert container["securityContext"]["readOnlyRootFilesystem"] is True
    assert container["securityContext"]["capabilities"]["drop"] == ["ALL"]


def test_kustomization_with_listed_resources_references_existing_files() -> None:
    kustomization = _read_yaml_document("kustomization.yaml")

    assert kustomization["resources"][0] == "crd/etcdbackups.yaml"
    for resource in kustomization["resources"]:
        assert (_K8S_MANIFEST_DIR / resource).is_file(), resource


def test_sample_backup_with_operator_parser_yields_runnable_worker() -> None:
    request = BackupRequest.from_object(_read_yaml_document("samples/etcdbackup.yaml"))

    worker = desired_worker_for(request)

    assert request.phase == ""
    assert worker.metadata.name == "etcdbackup-sample"
    assert worker.spec.containers[0].args == ["--etcd-endpoints", "10.0.0.1:2379"]
