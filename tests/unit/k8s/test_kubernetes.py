from __future__ import annotations

from unittest import mock

import pytest
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError

from certrenew_libs.common import UtilsForTesting
from certrenew_libs.errors import ResourceLookupError
from certrenew_libs.k8s import kubernetes
from certrenew_libs.k8s.kubernetes import (
    KUBEADM_CONTROL_PLANES,
    NODES,
    PODS,
    SECRETS,
    KubernetesApi,
    KubernetesApiError,
    KubernetesController,
    KubernetesNotFound,
    PatchType,
    machine_template_resource,
)
from certrenew_libs.test_helpers import FakeKubernetesApi


def get_api() -> KubernetesApi:
    api = KubernetesApi(api_client=mock.MagicMock())
    api._core = mock.MagicMock()
    api._custom = mock.MagicMock()
    return api


def get_node(name: str, ready: str | None = "True", labels: dict[str, str] | None = None) -> dict:
    node = {"metadata": {"name": name, "labels": labels or {"node-role.kubernetes.io/control-plane": ""}}}
    if ready is not None:
        conditions = [{"type": "MemoryPressure", "status": "False"}, {"type": "Ready", "status": ready}]
        node["status"] = {"conditions": conditions}

    return node


def test_Resource_str():
    assert str(PODS) == "pods"
    assert str(KUBEADM_CONTROL_PLANES) == "kubeadmcontrolplanes.v1alpha3.controlplane.cluster.x-k8s.io"


@pytest.mark.parametrize(
    **UtilsForTesting.to_parametrize(
        test_cases={
            "default group": {
                "api_version": None,
                "expected_group": "infrastructure.cluster.x-k8s.io",
                "expected_version": "v1alpha3",
            },
            "explicit api version": {
                "api_version": "infrastructure.cluster.x-k8s.io/v1beta1",
                "expected_group": "infrastructure.cluster.x-k8s.io",
                "expected_version": "v1beta1",
            },
        }
    )
)
def test_machine_template_resource(api_version, expected_group, expected_version):
    resource = machine_template_resource(kind="Metal3MachineTemplate", api_version=api_version)

    assert resource.group == expected_group
    assert resource.version == expected_version
    assert resource.plural == "metal3machinetemplates"
    assert not resource.is_core


def test_KubernetesApi_list_core_namespaced():
    api = get_api()
    api._core.list_namespaced_pod.return_value = {"items": [{"metadata": {"name": "pod1"}}]}

    result = api.list(PODS, namespace="kube-system", label_selector="app=cert-renew")

    assert result == [{"metadata": {"name": "pod1"}}]
    api._core.list_namespaced_pod.assert_called_once_with("kube-system", label_selector="app=cert-renew")


def test_KubernetesApi_list_core_all_namespaces():
    api = get_api()
    api._core.list_secret_for_all_namespaces.return_value = {"items": None}

    assert api.list(SECRETS, field_selector="type=kubernetes.io/tls") == []
    api._core.list_secret_for_all_namespaces.assert_called_once_with(field_selector="type=kubernetes.io/tls")


def test_KubernetesApi_list_cluster_scoped():
    api = get_api()
    api._core.list_node.return_value = {"items": [get_node("cp1")]}

    assert [node["metadata"]["name"] for node in api.list(NODES, namespace="ignored")] == ["cp1"]
    api._core.list_node.assert_called_once_with()


def test_KubernetesApi_list_custom_objects():
    api = get_api()
    api._custom.list_cluster_custom_object.return_value = {"items": [{"metadata": {"name": "kcp"}}]}

    assert api.list(KUBEADM_CONTROL_PLANES) == [{"metadata": {"name": "kcp"}}]
    api._custom.list_cluster_custom_object.assert_called_once_with(
        "controlplane.cluster.x-k8s.io", "v1alpha3", "kubeadmcontrolplanes"
    )


def test_KubernetesApi_get_not_found():
    api = get_api()
    api._core.read_node.side_effect = ApiException(status=404, reason="Not Found")

    with pytest.raises(KubernetesNotFound) as exc:
        api.get(NODES, "cp1")

    assert exc.value.status == 404
    assert "nodes/cp1" in str(exc.value)


def test_KubernetesApi_create_error():
    api = get_api()
    api._custom.create_namespaced_custom_object.side_effect = ApiException(status=403, reason="Forbidden")
    resource = machine_template_resource(kind="DockerMachineTemplate")

    with pytest.raises(KubernetesApiError) as exc:
        api.create(resource, {"metadata": {"generateName": "cp-"}}, namespace="default")

    assert not isinstance(exc.value, KubernetesNotFound)
    assert exc.value.status == 403


def test_KubernetesApi_connection_error():
    api = get_api()
    api._core.read_namespaced_pod.side_effect = MaxRetryError(pool=None, url="/api/v1", reason="refused")

    with pytest.raises(KubernetesApiError):
        api.get(PODS, "pod1", namespace="kube-system")


def test_KubernetesApi_patch_json():
    api = get_api()
    api._custom.patch_namespaced_custom_object.return_value = {"metadata": {"name": "kcp"}}
    body = [{"op": "replace", "path": "/spec/infrastructureTemplate/name", "value": "new"}]

    api.patch(KUBEADM_CONTROL_PLANES, "kcp", body, namespace="default")

    api._custom.patch_namespaced_custom_object.assert_called_once_with(
        "controlplane.cluster.x-k8s.io", "v1alpha3", "default", "kubeadmcontrolplanes", "kcp", body
    )


@pytest.mark.parametrize(
    **UtilsForTesting.to_parametrize(
        test_cases={
            "json patch with a dict": {"body": {"spec": {}}, "patch_type": PatchType.JSON},
            "merge patch with a list": {"body": [{"op": "remove", "path": "/spec"}], "patch_type": PatchType.MERGE},
        }
    )
)
def test_KubernetesApi_patch_wrong_body(body, patch_type):
    api = get_api()

    with pytest.raises(ValueError):
        api.patch(KUBEADM_CONTROL_PLANES, "kcp", body, namespace="default", patch_type=patch_type)

    api._custom.patch_namespaced_custom_object.assert_not_called()


def test_KubernetesApi_delete_with_grace_period():
    api = get_api()

    api.delete(SECRETS, "token", namespace="kube-system", grace_period_seconds=0)

    api._core.delete_namespaced_secret.assert_called_once_with("token", "kube-system", grace_period_seconds=0)


def test_KubernetesApi_from_config_error(monkeypatch):
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.setattr(
        kubernetes.config,
        "new_client_from_config",
        mock.MagicMock(side_effect=kubernetes.config.ConfigException("Invalid kube-config file")),
    )

    with pytest.raises(KubernetesApiError) as exc:
        KubernetesApi.from_config(kubeconfig="/does/not/exist")

    assert "Invalid kube-config file" in str(exc.value)


def test_KubernetesApi_from_config_in_cluster(monkeypatch):
    monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.0.0.1")
    load_incluster_config = mock.MagicMock()
    new_client_from_config = mock.MagicMock()
    monkeypatch.setattr(kubernetes.config, "load_incluster_config", load_incluster_config)
    monkeypatch.setattr(kubernetes.config, "new_client_from_config", new_client_from_config)

    assert isinstance(KubernetesApi.from_config(), KubernetesApi)

    load_incluster_config.assert_called_once_with()
    new_client_from_config.assert_not_called()


@pytest.mark.parametrize(
    **UtilsForTesting.to_parametrize(
        test_cases={
            "ready": {"ready": "True", "expected": True},
            "not ready": {"ready": "False", "expected": False},
            "unknown": {"ready": "Unknown", "expected": False},
            "no conditions yet": {"ready": None, "expected": False},
        }
    )
)
def test_KubernetesController_is_node_ready(ready, expected):
    controller = KubernetesController(api=FakeKubernetesApi(objects=[(NODES, get_node("cp1", ready=ready))]))

    assert controller.is_node_ready("cp1") is expected


def test_KubernetesController_is_node_ready_read_error():
    api = FakeKubernetesApi(objects=[(NODES, get_node("cp1"))])
    api.fail("get", NODES)
    controller = KubernetesController(api=api)

    with pytest.raises(ResourceLookupError):
        controller.is_node_ready("cp1")


def test_KubernetesController_get_control_plane_nodes():
    api = FakeKubernetesApi(
        objects=[
            (NODES, get_node("cp1")),
            (NODES, get_node("worker1", labels={"node-role.kubernetes.io/worker": ""})),
            (NODES, get_node("cp2")),
        ]
    )
    controller = KubernetesController(api=api)

    nodes = controller.get_control_plane_nodes()

    assert [node["metadata"]["name"] for node in nodes] == ["cp1", "cp2"]


def test_KubernetesController_get_control_plane_nodes_error():
    api = FakeKubernetesApi()
    api.fail("list", NODES)
    controller = KubernetesController(api=api)

    with pytest.raises(ResourceLookupError):
        controller.get_control_plane_nodes()


def test_KubernetesController_get_pod_phase_defaults_to_unknown():
    api = FakeKubernetesApi(objects=[(PODS, {"metadata": {"name": "pod1", "namespace": "kube-system"}})])

    assert KubernetesController(api=api).get_pod_phase("pod1", "kube-system") == "Unknown"
