#!/usr/bin/env python3
"""Rotate service account tokens."""
from __future__ import annotations

import logging

from certrenew_libs.errors import ConfigError, ResourceLookupError, ResourceNotFoundError
from certrenew_libs.k8s.kubernetes import PODS, SECRETS, KubernetesApi, KubernetesApiError, KubernetesNotFound

LOGGER = logging.getLogger(__name__)

SA_TOKEN_SECRET_TYPE = "kubernetes.io/service-account-token"


def _delete_pods_using_secret(api: KubernetesApi, secret_name: str, namespace: str) -> list[str]:
    """Delete the pods that mount the given secret, so they get a new token when recreated."""
    deleted = []
    for pod in api.list(PODS, namespace=namespace):
        volumes = (pod.get("spec") or {}).get("volumes") or []
        if any(volume.get("name") == secret_name for volume in volumes):
            pod_name = pod["metadata"]["name"]
            LOGGER.info("Deleting pod %s/%s", namespace, pod_name)
            api.delete(PODS, pod_name, namespace=namespace, grace_period_seconds=0)
            deleted.append(pod_name)

    return deleted


def rotate_sa_token(api: KubernetesApi, secret_name: str, namespace: str) -> None:
    """Delete a token secret and the pods using it, the token controller takes care of creating a new one."""
    LOGGER.info("Rotating token %s/%s", namespace, secret_name)
    api.delete(SECRETS, secret_name, namespace=namespace, grace_period_seconds=0)
    _delete_pods_using_secret(api=api, secret_name=secret_name, namespace=namespace)


def rotate_sa_tokens(api: KubernetesApi, namespace: str, secret_name: str | None = None) -> list[str]:
    """Rotate the given service account token, or all of them in the namespace if none given.

    Returns the names of the rotated secrets.
    """
    if secret_name is None:
        secrets = api.list(SECRETS, namespace=namespace, field_selector=f"type={SA_TOKEN_SECRET_TYPE}")
        if not secrets:
            raise ResourceNotFoundError(f"No service account tokens found in namespace {namespace}")

        secret_names = [secret["metadata"]["name"] for secret in secrets]

    else:
        try:
            secret = api.get(SECRETS, secret_name, namespace=namespace)
        except KubernetesNotFound as error:
            raise ResourceNotFoundError(f"Secret {namespace}/{secret_name} not found") from error
        except KubernetesApiError as error:
            raise ResourceLookupError(f"Unable to get secret {namespace}/{secret_name}: {error}") from error

        if secret.get("type") != SA_TOKEN_SECRET_TYPE:
            raise ConfigError(f"{secret_name} is not a Service Account Token")

        secret_names = [secret_name]

    for name in secret_names:
        rotate_sa_token(api=api, secret_name=name, namespace=namespace)

    return secret_names
