#!/usr/bin/env python3
"""Report the certificates of the cluster that are about to expire.

Three places are checked:
* TLS secrets (tls.crt and ca.crt), in all namespaces.
* Kubeconfig secrets of the workload clusters, the ones named '*-kubeconfig' owned by a KubeadmControlPlane.
* The 'cert-expiration' annotation of the nodes, that has the output of kubeadm for the node certificates.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import yaml
from cryptography import x509

from certrenew_libs.common import ArgparsableEnum
from certrenew_libs.errors import CertificateParseError, ConfigError
from certrenew_libs.k8s.kubernetes import NODES, SECRETS, KubernetesApi

LOGGER = logging.getLogger(__name__)

TLS_SECRET_TYPE = "kubernetes.io/tls"
TLS_SECRET_CERT_KEYS = ("tls.crt", "ca.crt")
KUBECONFIG_SECRET_SUFFIX = "-kubeconfig"
KUBECONFIG_SECRET_OWNER_KIND = "KubeadmControlPlane"
NODE_EXPIRATION_ANNOTATION = "cert-expiration"
NODE_EXPIRATION_DATE_FORMAT = "%b %d, %Y %H:%M %Z"
KUBECONFIG_HEADER = [
    "",
    "##########################################",
    "  KUBECONFIG expiry of Workload Clusters  ",
    "##########################################",
]


class ReportFormat(ArgparsableEnum):
    """Output formats for the expiration report."""

    TABLE = "table"
    YAML = "yaml"
    JSON = "json"


@dataclass(frozen=True)
class CertificateExpiration:
    """A certificate close to expiration, `name` is the cluster/user name for kubeconfig entries."""

    certificate_name: str
    expiry_date: datetime
    name: str | None = None

    def to_dict(self) -> dict[str, str]:
        """Dict representation, with the same keys the reports always had."""
        result = {"CertificateName": self.certificate_name, "ExpiryDate": str(self.expiry_date)}
        if self.name is not None:
            result = {"Name": self.name, **result}

        return result


@dataclass(frozen=True)
class SecretExpiration:
    """Expiring certificates of a TLS secret."""

    secret_name: str
    secret_namespace: str
    certificates: list[CertificateExpiration]

    def to_dict(self) -> dict[str, Any]:
        """Dict representation."""
        return {
            "SecretName": self.secret_name,
            "SecretNamespace": self.secret_namespace,
            "Data": [cert.to_dict() for cert in self.certificates],
        }


@dataclass(frozen=True)
class KubeconfigExpiration:
    """Expiring certificates of a workload cluster kubeconfig secret."""

    secret_name: str
    secret_namespace: str
    clusters: list[CertificateExpiration]
    users: list[CertificateExpiration]

    def to_dict(self) -> dict[str, Any]:
        """Dict representation, empty lists are left out."""
        result: dict[str, Any] = {"SecretName": self.secret_name, "SecretNamespace": self.secret_namespace}
        if self.clusters:
            result["Cluster"] = [cert.to_dict() for cert in self.clusters]
        if self.users:
            result["User"] = [cert.to_dict() for cert in self.users]

        return result


@dataclass(frozen=True)
class NodeExpiration:
    """Expiring certificates of a node, as reported in its annotation."""

    node_name: str
    certificates: list[CertificateExpiration]

    def to_dict(self) -> dict[str, Any]:
        """Dict representation."""
        return {"NodeName": self.node_name, "Data": [cert.to_dict() for cert in self.certificates]}


@dataclass(frozen=True)
class ExpirationReport:
    """All the certificates found to be close to expiration."""

    tls_secrets: list[SecretExpiration] = field(default_factory=list)
    kubeconfigs: list[KubeconfigExpiration] = field(default_factory=list)
    node_certs: list[NodeExpiration] = field(default_factory=list)

    def is_empty(self) -> bool:
        """True if nothing is about to expire."""
        return not (self.tls_secrets or self.kubeconfigs or self.node_certs)

    def to_dict(self) -> dict[str, Any]:
        """Dict representation, empty sections are left out."""
        result: dict[str, Any] = {}
        if self.tls_secrets:
            result["TlsSecret"] = [entry.to_dict() for entry in self.tls_secrets]
        if self.kubeconfigs:
            result["Kubeconf"] = [entry.to_dict() for entry in self.kubeconfigs]
        if self.node_certs:
            result["NodeCert"] = [entry.to_dict() for entry in self.node_certs]

        return result


def is_expiring(not_after: datetime, threshold_days: int, now: datetime | None = None) -> bool:
    """Whether the certificate has less than `threshold_days` whole days left (or expired already)."""
    now = now or datetime.now(timezone.utc)
    if not_after <= now:
        return True

    days_left = int((not_after - now).total_seconds() / 86400)
    return days_left < threshold_days


def get_not_after(pem_data: bytes) -> datetime:
    """Get the expiration date of a PEM encoded certificate."""
    try:
        certificate = x509.load_pem_x509_certificate(pem_data)
    except ValueError as error:
        raise CertificateParseError(f"failed to parse certificate: {error}") from error

    return certificate.not_valid_after_utc


def _decode_b64(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as error:
        raise CertificateParseError(f"{what} is not valid base64: {error}") from error


def check_tls_secrets(api: KubernetesApi, threshold_days: int, now: datetime | None = None) -> list[SecretExpiration]:
    """Check the certificates in all the TLS secrets."""
    result = []
    for secret in api.list(SECRETS, field_selector=f"type={TLS_SECRET_TYPE}"):
        metadata = secret["metadata"]
        data = secret.get("data") or {}
        expiring = []
        for cert_key in TLS_SECRET_CERT_KEYS:
            if not data.get(cert_key):
                continue

            what = f"{cert_key} in secret {metadata.get('namespace')}/{metadata['name']}"
            not_after = get_not_after(_decode_b64(data[cert_key], what=what))
            if is_expiring(not_after, threshold_days, now=now):
                expiring.append(CertificateExpiration(certificate_name=cert_key, expiry_date=not_after))

        if expiring:
            result.append(
                SecretExpiration(
                    secret_name=metadata["name"], secret_namespace=metadata.get("namespace", ""), certificates=expiring
                )
            )

    return result


def _is_workload_kubeconfig(secret: dict[str, Any]) -> bool:
    metadata = secret["metadata"]
    if not metadata["name"].endswith(KUBECONFIG_SECRET_SUFFIX):
        return False

    return any(ref.get("kind") == KUBECONFIG_SECRET_OWNER_KIND for ref in metadata.get("ownerReferences") or [])


def check_kubeconfig_secrets(
    api: KubernetesApi, threshold_days: int, now: datetime | None = None
) -> list[KubeconfigExpiration]:
    """Check the CA and client certificates of the workload cluster kubeconfigs."""
    result = []
    for secret in api.list(SECRETS):
        if not _is_workload_kubeconfig(secret):
            continue

        metadata = secret["metadata"]
        what = f"kubeconfig in secret {metadata.get('namespace')}/{metadata['name']}"
        try:
            kubeconfig = yaml.safe_load(_decode_b64((secret.get("data") or {}).get("value", ""), what=what)) or {}
        except yaml.YAMLError as error:
            raise CertificateParseError(f"Unable to parse {what}: {error}") from error

        clusters = []
        for cluster in kubeconfig.get("clusters") or []:
            ca_data = (cluster.get("cluster") or {}).get("certificate-authority-data")
            if not ca_data:
                continue

            not_after = get_not_after(_decode_b64(ca_data, what=f"cluster {cluster.get('name')} in {what}"))
            if is_expiring(not_after, threshold_days, now=now):
                clusters.append(
                    CertificateExpiration(
                        certificate_name="CertificateAuthorityData", expiry_date=not_after, name=cluster.get("name")
                    )
                )

        users = []
        for user in kubeconfig.get("users") or []:
            cert_data = (user.get("user") or {}).get("client-certificate-data")
            if not cert_data:
                continue

            not_after = get_not_after(_decode_b64(cert_data, what=f"user {user.get('name')} in {what}"))
            if is_expiring(not_after, threshold_days, now=now):
                users.append(
                    CertificateExpiration(
                        certificate_name="ClientCertificateData", expiry_date=not_after, name=user.get("name")
                    )
                )

        if clusters or users:
            result.append(
                KubeconfigExpiration(
                    secret_name=metadata["name"],
                    secret_namespace=metadata.get("namespace", ""),
                    clusters=clusters,
                    users=users,
                )
            )

    return result


def parse_node_expiration_annotation(value: str) -> list[tuple[str, datetime]]:
    """Parse the node annotation, that looks like '{apiserver: Aug 10, 2021 13:25 UTC},{admin.conf: ...}'."""
    result = []
    for entry in value.replace("{", "").split("},"):
        entry = entry.replace("}", "").strip()
        if not entry:
            continue

        cert_name, _, raw_date = entry.partition(":")
        try:
            expiry_date = datetime.strptime(raw_date.strip(), NODE_EXPIRATION_DATE_FORMAT)
        except ValueError as error:
            raise CertificateParseError(f"Unable to parse the expiry date of {cert_name.strip()}: {error}") from error

        result.append((cert_name.strip(), expiry_date.replace(tzinfo=timezone.utc)))

    return result


def check_node_certificates(
    api: KubernetesApi, threshold_days: int, now: datetime | None = None
) -> list[NodeExpiration]:
    """Check the node certificates reported in the node annotations."""
    result = []
    for node in api.list(NODES):
        annotation = (node["metadata"].get("annotations") or {}).get(NODE_EXPIRATION_ANNOTATION)
        if not annotation:
            continue

        expiring = [
            CertificateExpiration(certificate_name=cert_name, expiry_date=expiry_date)
            for cert_name, expiry_date in parse_node_expiration_annotation(annotation)
            if is_expiring(expiry_date, threshold_days, now=now)
        ]
        if expiring:
            result.append(NodeExpiration(node_name=node["metadata"]["name"], certificates=expiring))

    return result


def check_expiration(api: KubernetesApi, threshold_days: int, now: datetime | None = None) -> ExpirationReport:
    """Check all the known certificate locations."""
    if threshold_days < 0:
        raise ConfigError(f"The number of days can't be negative, got {threshold_days}")

    LOGGER.info("Checking for certificates expiring in less than %d days", threshold_days)
    return ExpirationReport(
        tls_secrets=check_tls_secrets(api, threshold_days, now=now),
        kubeconfigs=check_kubeconfig_secrets(api, threshold_days, now=now),
        node_certs=check_node_certificates(api, threshold_days, now=now),
    )


def _format_kubeconfig_entry(entry: KubeconfigExpiration, lines: list[str], header_printed: bool) -> bool:
    """Add the lines for a kubeconfig entry, with the header in front if it was not added yet.

    Returns the new value of the header flag.
    """
    if not header_printed:
        lines.extend(KUBECONFIG_HEADER)
        header_printed = True

    for cert in entry.clusters:
        lines.append(
            f"{cert.certificate_name} for {cert.name} cluster in {entry.secret_name} expires on [{cert.expiry_date}]"
        )
    for cert in entry.users:
        lines.append(
            f"{cert.certificate_name} for {cert.name} user in {entry.secret_name} expires on [{cert.expiry_date}]"
        )

    return header_printed


def format_table(report: ExpirationReport) -> str:
    """Human readable report."""
    lines = []
    if report.tls_secrets:
        lines.append(f"{'CERTIFICATE':<12}{'SECRET NAME':<50}EXPIRY DATE")
        for secret in report.tls_secrets:
            for cert in secret.certificates:
                lines.append(
                    f"{cert.certificate_name:<12}{secret.secret_namespace + '/' + secret.secret_name:<50}"
                    f"[{cert.expiry_date}]"
                )

    header_printed = False
    for entry in report.kubeconfigs:
        header_printed = _format_kubeconfig_entry(entry, lines, header_printed)

    if report.node_certs:
        lines.append("")
        lines.append(f"{'CERTIFICATE':<30}{'HOSTNAME':<30}EXPIRY DATE")
        for node in report.node_certs:
            for cert in node.certificates:
                lines.append(f"{cert.certificate_name:<30}{node.node_name:<30}[{cert.expiry_date}]")

    return "\n".join(lines)


def format_report(report: ExpirationReport, output: ReportFormat = ReportFormat.TABLE) -> str:
    """Render the report in the given format, empty string if there's nothing to report."""
    if report.is_empty():
        return ""

    if output == ReportFormat.YAML:
        return yaml.safe_dump(report.to_dict(), sort_keys=False)

    if output == ReportFormat.JSON:
        return json.dumps(report.to_dict(), indent=4)

    return format_table(report)
