#!/usr/bin/env python3
"""Generic kubernetes managing code."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from certrenew_libs.errors import CertRenewError, ResourceLookupError

LOGGER = logging.getLogger(__name__)

CAPI_GROUP = "cluster.x-k8s.io"
CAPI_VERSION = "v1alpha3"
CONTROL_PLANE_LABEL = "node-role.kubernetes.io/control-plane"


class KubernetesApiError(CertRenewError):
    """Risen when a call to the kubernetes API fails."""

    def __init__(self, message: str, status: int | None = None):
        """Init."""
        super().__init__(message)
        self.status = status


class KubernetesNotFound(KubernetesApiError):
    """Risen when the requested object does not exist."""


class PatchType(Enum):
    """Patch flavours supported by the API gateway.

    The kubernetes client picks the content type from the body, a list of operations is sent as a JSON patch and a
    dict as a merge patch.
    """

    JSON = "application/json-patch+json"
    MERGE = "application/merge-patch+json"


@dataclass(frozen=True)
class Resource:
    """Identifies a kind of object in the kubernetes API."""

    group: str
    version: str
    plural: str
    singular: str
    namespaced: bool = True

    @property
    def is_core(self) -> bool:
        """Core objects go through CoreV1Api, everything else is a custom object."""
        return self.group == ""

    def __str__(self):
        """String representation."""
        if self.is_core:
            return self.plural

        return f"{self.plural}.{self.version}.{self.group}"


PODS = Resource(group="", version="v1", plural="pods", singular="pod")
NODES = Resource(group="", version="v1", plural="nodes", singular="node", namespaced=False)
SECRETS = Resource(group="", version="v1", plural="secrets", singular="secret")
KUBEADM_CONTROL_PLANES = Resource(
    group=f"controlplane.{CAPI_GROUP}",
    version=CAPI_VERSION,
    plural="kubeadmcontrolplanes",
    singular="kubeadmcontrolplane",
)


def machine_template_resource(kind: str, api_version: str | None = None) -> Resource:
    """Get the resource for a provider machine template kind, ex. DockerMachineTemplate."""
    group = f"infrastructure.{CAPI_GROUP}"
    version = CAPI_VERSION
    if api_version and "/" in api_version:
        group, version = api_version.split("/", 1)

    return Resource(group=group, version=version, plural=f"{kind.lower()}s", singular=kind.lower())


class KubernetesApi:
    """Thin gateway to the kubernetes API that deals only with plain dicts."""

    def __init__(self, api_client: client.ApiClient):
        """Init."""
        self._api_client = api_client
        self._core = client.CoreV1Api(api_client)
        self._custom = client.CustomObjectsApi(api_client)

    @classmethod
    def from_config(cls, kubeconfig: str | None = None, context: str | None = None) -> "KubernetesApi":
        """Create a gateway from a kubeconfig file, or from the in-cluster service account if there's none."""
        if kubeconfig is None and context is None and "KUBERNETES_SERVICE_HOST" in os.environ:
            LOGGER.debug("Using in-cluster kubernetes configuration")
            config.load_incluster_config()
            return cls(client.ApiClient())

        LOGGER.debug("Loading kubeconfig %s (context %s)", kubeconfig or "from default location", context)
        try:
            return cls(config.new_client_from_config(config_file=kubeconfig, context=context))
        except config.ConfigException as error:
            raise KubernetesApiError(f"Unable to load kubernetes configuration: {error}") from error

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj

        return self._api_client.sanitize_for_serialization(obj)

    def _call(self, action: str, resource: Resource, name: str | None, func, *args, **kwargs) -> Any:
        what = f"{resource}/{name}" if name else str(resource)
        try:
            return func(*args, **kwargs)
        except ApiException as error:
            message = f"Unable to {action} {what}: {error.status} {error.reason}"
            if error.status == 404:
                raise KubernetesNotFound(message, status=error.status) from error

            raise KubernetesApiError(message, status=error.status) from error
        except HTTPError as error:
            raise KubernetesApiError(f"Unable to {action} {what}: {error}") from error

    def list(
        self,
        resource: Resource,
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """List objects, in all namespaces when no namespace is given."""
        selectors = {}
        if label_selector:
            selectors["label_selector"] = label_selector
        if field_selector:
            selectors["field_selector"] = field_selector

        if resource.is_core:
            if not resource.namespaced:
                func = getattr(self._core, f"list_{resource.singular}")
                args: tuple[Any, ...] = ()
            elif namespace:
                func = getattr(self._core, f"list_namespaced_{resource.singular}")
                args = (namespace,)
            else:
                func = getattr(self._core, f"list_{resource.singular}_for_all_namespaces")
                args = ()

            result = self._call("list", resource, None, func, *args, **selectors)
            return self._to_dict(result).get("items") or []

        if resource.namespaced and namespace:
            result = self._call(
                "list",
                resource,
                None,
                self._custom.list_namespaced_custom_object,
                resource.group,
                resource.version,
                namespace,
                resource.plural,
                **selectors,
            )
        else:
            result = self._call(
                "list",
                resource,
                None,
                self._custom.list_cluster_custom_object,
                resource.group,
                resource.version,
                resource.plural,
                **selectors,
            )

        return result.get("items") or []

    def get(self, resource: Resource, name: str, namespace: str | None = None) -> dict[str, Any]:
        """Get a single object."""
        if resource.is_core:
            if resource.namespaced:
                func = getattr(self._core, f"read_namespaced_{resource.singular}")
                result = self._call("get", resource, name, func, name, namespace)
            else:
                func = getattr(self._core, f"read_{resource.singular}")
                result = self._call("get", resource, name, func, name)

            return self._to_dict(result)

        if resource.namespaced:
            return self._call(
                "get",
                resource,
                name,
                self._custom.get_namespaced_custom_object,
                resource.group,
                resource.version,
                namespace,
                resource.plural,
                name,
            )

        return self._call(
            "get",
            resource,
            name,
            self._custom.get_cluster_custom_object,
            resource.group,
            resource.version,
            resource.plural,
            name,
        )

    def create(self, resource: Resource, body: dict[str, Any], namespace: str | None = None) -> dict[str, Any]:
        """Create an object, returns the object as stored by the API (with the generated name if any)."""
        name = body.get("metadata", {}).get("name") or body.get("metadata", {}).get("generateName")
        if resource.is_core:
            if resource.namespaced:
                func = getattr(self._core, f"create_namespaced_{resource.singular}")
                result = self._call("create", resource, name, func, namespace, body)
            else:
                func = getattr(self._core, f"create_{resource.singular}")
                result = self._call("create", resource, name, func, body)

            return self._to_dict(result)

        if resource.namespaced:
            return self._call(
                "create",
                resource,
                name,
                self._custom.create_namespaced_custom_object,
                resource.group,
                resource.version,
                namespace,
                resource.plural,
                body,
            )

        return self._call(
            "create",
            resource,
            name,
            self._custom.create_cluster_custom_object,
            resource.group,
            resource.version,
            resource.plural,
            body,
        )

    def patch(
        self,
        resource: Resource,
        name: str,
        body: list[dict[str, Any]] | dict[str, Any],
        namespace: str | None = None,
        patch_type: PatchType = PatchType.JSON,
    ) -> dict[str, Any]:
        """Patch an object."""
        if patch_type == PatchType.JSON and not isinstance(body, list):
            raise ValueError(f"A JSON patch must be a list of operations, got {body}")
        if patch_type == PatchType.MERGE and not isinstance(body, dict):
            raise ValueError(f"A merge patch must be a dict, got {body}")

        if resource.is_core:
            if resource.namespaced:
                func = getattr(self._core, f"patch_namespaced_{resource.singular}")
                result = self._call("patch", resource, name, func, name, namespace, body)
            else:
                func = getattr(self._core, f"patch_{resource.singular}")
                result = self._call("patch", resource, name, func, name, body)

            return self._to_dict(result)

        if resource.namespaced:
            return self._call(
                "patch",
                resource,
                name,
                self._custom.patch_namespaced_custom_object,
                resource.group,
                resource.version,
                namespace,
                resource.plural,
                name,
                body,
            )

        return self._call(
            "patch",
            resource,
            name,
            self._custom.patch_cluster_custom_object,
            resource.group,
            resource.version,
            resource.plural,
            name,
            body,
        )

    def delete(
        self,
        resource: Resource,
        name: str,
        namespace: str | None = None,
        grace_period_seconds: int | None = None,
    ) -> None:
        """Delete an object, it does not wait for it to be gone."""
        options = {}
        if grace_period_seconds is not None:
            options["grace_period_seconds"] = grace_period_seconds

        if resource.is_core:
            if resource.namespaced:
                func = getattr(self._core, f"delete_namespaced_{resource.singular}")
                self._call("delete", resource, name, func, name, namespace, **options)
            else:
                func = getattr(self._core, f"delete_{resource.singular}")
                self._call("delete", resource, name, func, name, **options)
            return

        if resource.namespaced:
            self._call(
                "delete",
                resource,
                name,
                self._custom.delete_namespaced_custom_object,
                resource.group,
                resource.version,
                namespace,
                resource.plural,
                name,
                **options,
            )
        else:
            self._call(
                "delete",
                resource,
                name,
                self._custom.delete_cluster_custom_object,
                resource.group,
                resource.version,
                resource.plural,
                name,
                **options,
            )


class KubernetesController:
    """Controller for a kubernetes cluster."""

    def __init__(self, api: KubernetesApi):
        """Init."""
        self.api = api

    def get_nodes(self, selector: str | None = None) -> list[dict[str, Any]]:
        """Get the nodes currently in the cluster."""
        return self.api.list(NODES, label_selector=selector)

    def get_control_plane_nodes(self, selector: str = CONTROL_PLANE_LABEL) -> list[dict[str, Any]]:
        """Get the control plane nodes, in the order the API lists them.

        Unlike the other reads, this does not tolerate any failure, we must know exactly which nodes to touch.
        """
        try:
            return self.get_nodes(selector=selector)
        except KubernetesApiError as error:
            raise ResourceLookupError(f"Unable to list the control plane nodes ({selector}): {error}") from error

    def is_node_ready(self, node_hostname: str) -> bool:
        """Ready means the kubelet reports the 'Ready' condition as 'True'."""
        try:
            node = self.api.get(NODES, node_hostname)
        except KubernetesApiError as error:
            raise ResourceLookupError(f"Unable to read node {node_hostname}: {error}") from error

        conditions = (node.get("status") or {}).get("conditions") or []
        return any(condition.get("type") == "Ready" and condition.get("status") == "True" for condition in conditions)

    def get_pod_phase(self, pod_name: str, namespace: str) -> str:
        """Get the phase of a pod, 'Unknown' if the API does not report one yet."""
        pod = self.api.get(PODS, pod_name, namespace=namespace)
        return (pod.get("status") or {}).get("phase") or "Unknown"
