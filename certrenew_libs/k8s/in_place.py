#!/usr/bin/env python3
"""Renew the control plane certificates in place, one node at a time."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Generator

from certrenew_libs.errors import PollTimeoutError, ResourceCreateError, ResourceNotFoundError
from certrenew_libs.k8s.kubernetes import (
    CONTROL_PLANE_LABEL,
    PODS,
    KubernetesApi,
    KubernetesApiError,
    KubernetesController,
)
from certrenew_libs.k8s.maintenance_pod import MaintenancePodSettings, build_maintenance_pod
from certrenew_libs.k8s.polling import PollPolicy
from certrenew_libs.k8s.strategy import RenewalOutcome, RenewalStrategy, RenewalStrategyName

LOGGER = logging.getLogger(__name__)


class MaintenancePodFailedError(PollTimeoutError):
    """Risen when a maintenance pod ended in the 'Failed' phase before running out of attempts."""


class NodeRenewalPhase(Enum):
    """Enum to represent the renewal phase of a control plane node."""

    PENDING = auto()
    POD_CREATED = auto()
    POD_SUCCEEDED = auto()
    POD_FAILED = auto()
    NODE_HEALTHY = auto()
    NODE_UNHEALTHY = auto()

    def __str__(self):
        """String representation."""
        return self.name.lower()


@dataclass(frozen=True)
class InPlaceOutcome(RenewalOutcome):
    """Nodes renewed, in the order they were done."""

    renewed_nodes: tuple[str, ...] = ()

    def summary(self) -> str:
        """One line summary, used for logging."""
        return f"{self.strategy} renewal done for {len(self.renewed_nodes)} nodes: {', '.join(self.renewed_nodes)}"


class InPlaceRenewal(RenewalStrategy):
    """Runs a maintenance pod on every control plane node, waiting for each node to be healthy before the next.

    Nodes are never done in parallel, renewing several control plane nodes at the same time risks losing quorum.
    """

    name = RenewalStrategyName.IN_PLACE

    def __init__(
        self,
        api: KubernetesApi,
        poll_policy: PollPolicy | None = None,
        pod_settings: MaintenancePodSettings | None = None,
        control_plane_selector: str = CONTROL_PLANE_LABEL,
    ):
        """Init."""
        self.api = api
        self.k8s_control = KubernetesController(api=api)
        self.poll_policy = poll_policy or PollPolicy()
        self.pod_settings = pod_settings or MaintenancePodSettings()
        self.control_plane_selector = control_plane_selector

    def create_maintenance_pod(self, node_hostname: str, expiration_threshold: str) -> str:
        """Create the maintenance pod for a node, returns the generated pod name."""
        manifest = build_maintenance_pod(
            node_hostname=node_hostname, expiration_threshold=expiration_threshold, settings=self.pod_settings
        )
        try:
            pod = self.api.create(PODS, manifest, namespace=self.pod_settings.namespace)
        except KubernetesApiError as error:
            raise ResourceCreateError(
                f"Unable to create the maintenance pod for node {node_hostname}: {error}"
            ) from error

        pod_name = pod["metadata"]["name"]
        LOGGER.info("Created maintenance pod %s/%s on node %s", self.pod_settings.namespace, pod_name, node_hostname)
        return pod_name

    def is_pod_succeeded(self, pod_name: str, node_hostname: str) -> bool:
        """Check if the maintenance pod finished successfully, raises if it failed."""
        phase = self.k8s_control.get_pod_phase(pod_name=pod_name, namespace=self.pod_settings.namespace)
        if phase == "Failed":
            raise MaintenancePodFailedError(
                what=pod_name,
                attempts=0,
                message=(
                    f"Maintenance pod {self.pod_settings.namespace}/{pod_name} failed on node {node_hostname}, "
                    f"check its logs with 'kubectl logs -n {self.pod_settings.namespace} {pod_name}'"
                ),
            )

        return phase == "Succeeded"

    def renew_node(
        self, node_hostname: str, expiration_threshold: str
    ) -> Generator[NodeRenewalPhase, None, NodeRenewalPhase]:
        """Renew the certificates of a single node, yields every phase it goes through.

        The failure phases are yielded right before raising, so the caller can report them.
        """
        yield NodeRenewalPhase.PENDING
        pod_name = self.create_maintenance_pod(node_hostname=node_hostname, expiration_threshold=expiration_threshold)

        yield NodeRenewalPhase.POD_CREATED
        try:
            self.poll_policy.wait_for(
                check=lambda: self.is_pod_succeeded(pod_name=pod_name, node_hostname=node_hostname),
                description=f"maintenance pod {pod_name} on node {node_hostname} to succeed",
            )
        except MaintenancePodFailedError as error:
            yield NodeRenewalPhase.POD_FAILED
            raise error
        except PollTimeoutError as error:
            yield NodeRenewalPhase.POD_FAILED
            raise PollTimeoutError(
                what=pod_name,
                attempts=error.attempts,
                message=(
                    f"Maintenance pod {self.pod_settings.namespace}/{pod_name} on node {node_hostname} did not "
                    f"succeed after {error.attempts} checks, check its logs with "
                    f"'kubectl logs -n {self.pod_settings.namespace} {pod_name}'"
                ),
            ) from error

        yield NodeRenewalPhase.POD_SUCCEEDED
        try:
            self.poll_policy.wait_for(
                check=lambda: self.k8s_control.is_node_ready(node_hostname),
                description=f"node {node_hostname} to become ready",
            )
        except PollTimeoutError as error:
            yield NodeRenewalPhase.NODE_UNHEALTHY
            raise PollTimeoutError(
                what=node_hostname,
                attempts=error.attempts,
                message=f"Node {node_hostname} did not become ready after {error.attempts} checks",
            ) from error

        return NodeRenewalPhase.NODE_HEALTHY

    def renew(self, expiration_threshold: str) -> InPlaceOutcome:
        """Renew all the control plane nodes, stops at the first one that fails."""
        nodes = self.k8s_control.get_control_plane_nodes(selector=self.control_plane_selector)
        if not nodes:
            raise ResourceNotFoundError(
                f"No control plane nodes found with selector '{self.control_plane_selector}', nothing would be renewed"
            )

        node_hostnames = [node["metadata"]["name"] for node in nodes]
        LOGGER.info("Renewing certificates in place on %d control plane nodes: %s", len(nodes), node_hostnames)

        renewed: list[str] = []
        for node_hostname in node_hostnames:
            phases = self.renew_node(node_hostname=node_hostname, expiration_threshold=expiration_threshold)
            while True:
                try:
                    phase = next(phases)
                except StopIteration as stop:
                    LOGGER.info("%s: renewal phase: %s", node_hostname, stop.value)
                    break

                LOGGER.info("%s: renewal phase: %s", node_hostname, phase)

            renewed.append(node_hostname)

        return InPlaceOutcome(strategy=self.name, renewed_nodes=tuple(renewed))
