#!/usr/bin/env python3
"""Privileged pods that run the certificate renewal on a given node."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

MAINTENANCE_APP_LABEL = "cert-renew"
MAINTENANCE_NODE_LABEL = "cert-renew/node"
DEFAULT_NAMESPACE = "kube-system"
DEFAULT_IMAGE = "quay.io/airshipit/cert-renew:latest"
DEFAULT_RENEW_BINARY = "/usr/local/bin/cert-renew"
DEFAULT_PKI_DIR = "/etc/kubernetes/pki"
DEFAULT_CRI_SOCKET = "/run/containerd/containerd.sock"


@dataclass(frozen=True)
class MaintenancePodSettings:
    """Where and how the maintenance pods run."""

    namespace: str = DEFAULT_NAMESPACE
    image: str = DEFAULT_IMAGE
    renew_binary: str = DEFAULT_RENEW_BINARY
    pki_dir: str = DEFAULT_PKI_DIR
    cri_socket: str = DEFAULT_CRI_SOCKET


def get_pod_name_prefix(node_hostname: str) -> str:
    """Prefix of the generated pod name for the given node."""
    return f"cert-renew-{node_hostname}"


def build_maintenance_pod(
    node_hostname: str,
    expiration_threshold: str,
    settings: MaintenancePodSettings | None = None,
) -> dict[str, Any]:
    """Get the manifest of the pod that renews the certificates of the given node.

    The pod is pinned with `nodeName` so it skips the scheduler and can only ever land on that node, it shares the
    host pid and network namespaces and mounts the host PKI directory and container runtime socket. It's never
    restarted, a failed renewal needs a human to look at it.
    """
    settings = settings or MaintenancePodSettings()
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "generateName": f"{get_pod_name_prefix(node_hostname)}-",
            "namespace": settings.namespace,
            "labels": {
                "app.kubernetes.io/name": MAINTENANCE_APP_LABEL,
                MAINTENANCE_NODE_LABEL: node_hostname,
            },
        },
        "spec": {
            "nodeName": node_hostname,
            "hostPID": True,
            "hostNetwork": True,
            "restartPolicy": "Never",
            # control plane nodes are usually tainted, nodeName skips the scheduler but not NoExecute taints
            "tolerations": [{"operator": "Exists"}],
            "containers": [
                {
                    "name": MAINTENANCE_APP_LABEL,
                    "image": settings.image,
                    "command": [settings.renew_binary, "--expiration-threshold", expiration_threshold],
                    "securityContext": {
                        "privileged": True,
                        "capabilities": {"add": ["SYS_PTRACE"]},
                    },
                    "volumeMounts": [
                        {"name": "pki", "mountPath": settings.pki_dir},
                        {"name": "cri-socket", "mountPath": settings.cri_socket},
                    ],
                }
            ],
            "volumes": [
                {"name": "pki", "hostPath": {"path": settings.pki_dir, "type": "Directory"}},
                {"name": "cri-socket", "hostPath": {"path": settings.cri_socket, "type": "Socket"}},
            ],
        },
    }
