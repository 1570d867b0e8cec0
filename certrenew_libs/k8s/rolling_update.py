#!/usr/bin/env python3
"""Renew the control plane certificates by rolling out new control plane machines with cluster-api.

This works by cloning the machine template the KubeadmControlPlane references and pointing the KubeadmControlPlane to
the clone, the infrastructure provider then replaces the control plane machines one by one, and the new machines come
with fresh certificates. The replacement itself is asynchronous, and not tracked here.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any

from certrenew_libs.errors import (
    ResourceCreateError,
    ResourceLookupError,
    ResourceNotFoundError,
    ResourcePatchError,
)
from certrenew_libs.k8s.kubernetes import (
    KUBEADM_CONTROL_PLANES,
    KubernetesApi,
    KubernetesApiError,
    PatchType,
    Resource,
    machine_template_resource,
)
from certrenew_libs.k8s.strategy import RenewalOutcome, RenewalStrategy, RenewalStrategyName

LOGGER = logging.getLogger(__name__)

TEMPLATE_REFERENCE_NAME_PATH = "/spec/infrastructureTemplate/name"
# fields set by the API server that must not be carried over to the clone
SERVER_SET_METADATA = ("name", "resourceVersion", "uid", "creationTimestamp", "generation", "managedFields", "selfLink")


@dataclass(frozen=True)
class RollingUpdateOutcome(RenewalOutcome):
    """References to the objects involved in the rolling update, as namespace/name."""

    control_plane: str = ""
    old_template: str = ""
    new_template: str = ""

    def summary(self) -> str:
        """One line summary, used for logging."""
        return (
            f"{self.strategy} renewal triggered, {self.control_plane} now uses machine template {self.new_template} "
            f"(was {self.old_template})"
        )


def _namespaced_name(obj: dict[str, Any]) -> str:
    metadata = obj.get("metadata", {})
    return f"{metadata.get('namespace', '')}/{metadata.get('name', '')}"


def clone_machine_template(template: dict[str, Any]) -> dict[str, Any]:
    """Get a copy of the template ready to be created as a new object.

    The copy gets an empty name and a generated name prefix based on the original name, the rest of the body is kept.
    """
    clone = copy.deepcopy(template)
    metadata = clone.setdefault("metadata", {})
    original_name = metadata.get("name", "")
    for field in SERVER_SET_METADATA:
        metadata.pop(field, None)

    metadata["generateName"] = f"{original_name}-"
    return clone


def build_template_reference_patch(new_template_name: str) -> list[dict[str, Any]]:
    """JSON patch that points a KubeadmControlPlane to another machine template."""
    return [{"op": "replace", "path": TEMPLATE_REFERENCE_NAME_PATH, "value": new_template_name}]


class RollingUpdateRenewal(RenewalStrategy):
    """Makes the infrastructure provider replace the control plane machines."""

    name = RenewalStrategyName.ROLLING_UPDATE

    def __init__(self, api: KubernetesApi, strict: bool = False):
        """Init.

        With `strict`, finding more than one KubeadmControlPlane is an error instead of using the first one.
        """
        self.api = api
        self.strict = strict

    def get_control_plane(self) -> dict[str, Any]:
        """Get the KubeadmControlPlane of the cluster."""
        try:
            control_planes = self.api.list(KUBEADM_CONTROL_PLANES)
        except KubernetesApiError as error:
            raise ResourceLookupError(f"Unable to list {KUBEADM_CONTROL_PLANES}: {error}") from error

        if not control_planes:
            raise ResourceNotFoundError("no control-plane resource found (no kubeadmcontrolplanes in the cluster)")

        if len(control_planes) > 1:
            candidates = ", ".join(_namespaced_name(control_plane) for control_plane in control_planes)
            if self.strict:
                raise ResourceLookupError(f"Found more than one control-plane resource, refusing to pick: {candidates}")

            LOGGER.warning(
                "Found more than one control-plane resource (%s), using the first one: %s",
                candidates,
                _namespaced_name(control_planes[0]),
            )

        return control_planes[0]

    def get_machine_template(self, control_plane: dict[str, Any]) -> tuple[Resource, dict[str, Any]]:
        """Get the machine template referenced by the given KubeadmControlPlane, and its resource type."""
        try:
            reference = control_plane["spec"]["infrastructureTemplate"]
            kind = reference["kind"]
            name = reference["name"]
        except KeyError as error:
            raise ResourceLookupError(
                f"{_namespaced_name(control_plane)} has no usable spec.infrastructureTemplate reference: {error}"
            ) from error

        namespace = reference.get("namespace") or control_plane["metadata"].get("namespace")
        resource = machine_template_resource(kind=kind, api_version=reference.get("apiVersion"))
        try:
            template = self.api.get(resource, name, namespace=namespace)
        except KubernetesApiError as error:
            raise ResourceLookupError(f"Unable to get machine template {kind} {namespace}/{name}: {error}") from error

        return resource, template

    def create_template_clone(self, resource: Resource, template: dict[str, Any]) -> dict[str, Any]:
        """Create a copy of the given machine template, returns the created object."""
        namespace = template["metadata"].get("namespace")
        try:
            new_template = self.api.create(resource, clone_machine_template(template), namespace=namespace)
        except KubernetesApiError as error:
            raise ResourceCreateError(
                f"Unable to create a copy of machine template {_namespaced_name(template)}: {error}"
            ) from error

        LOGGER.info("Created machine template %s from %s", _namespaced_name(new_template), _namespaced_name(template))
        return new_template

    def point_control_plane_to(
        self, control_plane: dict[str, Any], template_resource: Resource, new_template: dict[str, Any]
    ) -> None:
        """Replace the machine template reference of the KubeadmControlPlane.

        Nothing is cleaned up if this fails, the error carries the name of the now unused template.
        """
        new_name = new_template["metadata"]["name"]
        namespace = new_template["metadata"].get("namespace")
        try:
            self.api.patch(
                KUBEADM_CONTROL_PLANES,
                control_plane["metadata"]["name"],
                build_template_reference_patch(new_name),
                namespace=control_plane["metadata"].get("namespace"),
                patch_type=PatchType.JSON,
            )
        except KubernetesApiError as error:
            raise ResourcePatchError(
                f"Unable to patch {_namespaced_name(control_plane)} with the new machine template reference: "
                f"{error}. The machine template {namespace}/{new_name} is not used by anything, remove it with "
                f"'kubectl delete {template_resource} -n {namespace} {new_name}'",
                orphaned_template=f"{namespace}/{new_name}",
            ) from error

        LOGGER.info("Pointed %s to machine template %s", _namespaced_name(control_plane), new_name)

    def renew(self, expiration_threshold: str) -> RollingUpdateOutcome:
        """Trigger the rolling update of the control plane.

        All the control plane machines get replaced, so the expiration threshold does not change anything here.
        """
        LOGGER.debug("Ignoring expiration threshold %s, all the machines will be replaced", expiration_threshold)
        control_plane = self.get_control_plane()
        template_resource, template = self.get_machine_template(control_plane)
        new_template = self.create_template_clone(template_resource, template)
        self.point_control_plane_to(control_plane, template_resource, new_template)

        return RollingUpdateOutcome(
            strategy=self.name,
            control_plane=_namespaced_name(control_plane),
            old_template=_namespaced_name(template),
            new_template=_namespaced_name(new_template),
        )
