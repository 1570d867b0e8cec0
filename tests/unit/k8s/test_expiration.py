from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from certrenew_libs.common import UtilsForTesting
from certrenew_libs.errors import CertificateParseError, ConfigError
from certrenew_libs.k8s.expiration import (
    KUBECONFIG_HEADER,
    ReportFormat,
    check_expiration,
    format_report,
    get_not_after,
    is_expiring,
    parse_node_expiration_annotation,
)
from certrenew_libs.k8s.kubernetes import NODES, SECRETS
from certrenew_libs.test_helpers import FakeKubernetesApi

NOW = datetime(2021, 8, 1, tzinfo=timezone.utc)


def get_pem(not_after: datetime) -> bytes:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "kubernetes")])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_after - timedelta(days=365))
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM)


def b64(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode()
    return base64.b64encode(data).decode()


def get_tls_secret(name: str, **certs: datetime) -> dict[str, Any]:
    return {
        "metadata": {"name": name, "namespace": "default"},
        "type": "kubernetes.io/tls",
        "data": {key.replace("_", "."): b64(get_pem(not_after)) for key, not_after in certs.items()},
    }


def get_kubeconfig_secret(name: str, not_after: datetime, owner_kind: str = "KubeadmControlPlane") -> dict[str, Any]:
    kubeconfig = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": "workload", "cluster": {"certificate-authority-data": b64(get_pem(not_after))}}],
        "users": [{"name": "workload-admin", "user": {"client-certificate-data": b64(get_pem(not_after))}}],
    }
    return {
        "metadata": {
            "name": name,
            "namespace": "target-infra",
            "ownerReferences": [{"kind": owner_kind, "name": "workload-cp"}],
        },
        "type": "cluster.x-k8s.io/secret",
        "data": {"value": b64(yaml.safe_dump(kubeconfig))},
    }


def get_node(name: str, annotation: str | None) -> dict[str, Any]:
    annotations = {"cert-expiration": annotation} if annotation else {}
    return {"metadata": {"name": name, "annotations": annotations}}


@pytest.mark.parametrize(
    **UtilsForTesting.to_parametrize(
        test_cases={
            "well before": {"not_after": NOW + timedelta(days=90), "expected": False},
            "exactly the threshold": {"not_after": NOW + timedelta(days=30), "expected": False},
            "partial days are not counted": {"not_after": NOW + timedelta(days=29, hours=23), "expected": True},
            "soon": {"not_after": NOW + timedelta(days=1), "expected": True},
            "already expired": {"not_after": NOW - timedelta(days=3), "expected": True},
        }
    )
)
def test_is_expiring(not_after, expected):
    assert is_expiring(not_after, threshold_days=30, now=NOW) is expected


def test_is_expiring_already_expired_with_zero_days():
    assert is_expiring(NOW - timedelta(hours=1), threshold_days=0, now=NOW) is True
    assert is_expiring(NOW + timedelta(hours=1), threshold_days=0, now=NOW) is False


def test_get_not_after():
    not_after = NOW + timedelta(days=10)

    assert get_not_after(get_pem(not_after)) == not_after


def test_get_not_after_invalid():
    with pytest.raises(CertificateParseError):
        get_not_after(b"-----BEGIN CERTIFICATE-----\nnope\n-----END CERTIFICATE-----\n")


def test_parse_node_expiration_annotation():
    annotation = "{apiserver: Aug 10, 2021 13:25 UTC},{admin.conf: Jul 10, 2022 13:25 UTC}"

    parsed = parse_node_expiration_annotation(annotation)

    assert parsed == [
        ("apiserver", datetime(2021, 8, 10, 13, 25, tzinfo=timezone.utc)),
        ("admin.conf", datetime(2022, 7, 10, 13, 25, tzinfo=timezone.utc)),
    ]


def test_parse_node_expiration_annotation_invalid():
    with pytest.raises(CertificateParseError):
        parse_node_expiration_annotation("{apiserver: some day}")


def get_api() -> FakeKubernetesApi:
    return FakeKubernetesApi(
        objects=[
            (
                SECRETS,
                get_tls_secret("expiring-tls", tls_crt=NOW + timedelta(days=5), ca_crt=NOW + timedelta(days=900)),
            ),
            (SECRETS, get_tls_secret("healthy-tls", tls_crt=NOW + timedelta(days=300))),
            (SECRETS, get_kubeconfig_secret("workload-kubeconfig", NOW + timedelta(days=10))),
            (SECRETS, get_kubeconfig_secret("other-kubeconfig", NOW + timedelta(days=10), owner_kind="Cluster")),
            (NODES, get_node("cp1", "{apiserver: Aug 10, 2021 13:25 UTC},{admin.conf: Jul 10, 2022 13:25 UTC}")),
            (NODES, get_node("cp2", None)),
        ]
    )


def test_check_expiration():
    report = check_expiration(api=get_api(), threshold_days=30, now=NOW)

    (tls_secret,) = report.tls_secrets
    assert tls_secret.secret_name == "expiring-tls"
    assert [cert.certificate_name for cert in tls_secret.certificates] == ["tls.crt"]

    (kubeconfig,) = report.kubeconfigs
    assert kubeconfig.secret_name == "workload-kubeconfig"
    assert [cert.name for cert in kubeconfig.clusters] == ["workload"]
    assert [cert.name for cert in kubeconfig.users] == ["workload-admin"]

    (node,) = report.node_certs
    assert node.node_name == "cp1"
    assert [cert.certificate_name for cert in node.certificates] == ["apiserver"]


def test_check_expiration_negative_days():
    api = get_api()

    with pytest.raises(ConfigError):
        check_expiration(api=api, threshold_days=-1, now=NOW)

    assert api.calls == []


def test_check_expiration_nothing_expiring():
    report = check_expiration(api=get_api(), threshold_days=1, now=NOW)

    assert report.is_empty()
    assert format_report(report) == ""


def test_check_expiration_invalid_secret_data():
    broken = {
        "metadata": {"name": "broken", "namespace": "default"},
        "type": "kubernetes.io/tls",
        "data": {"tls.crt": "!!not base64!!"},
    }
    api = FakeKubernetesApi(objects=[(SECRETS, broken)])


    with pytest.raises(CertificateParseError):
        check_expiration(api=api, threshold_days=30, now=NOW)


def test_format_report_table_prints_the_kubeconfig_header_once():
    api = get_api()
    api.add(SECRETS, get_kubeconfig_secret("second-kubeconfig", NOW + timedelta(days=2)))
    report = check_expiration(api=api, threshold_days=30, now=NOW)

    output = format_report(report, ReportFormat.TABLE)

    assert len(report.kubeconfigs) == 2
    assert output.count(KUBECONFIG_HEADER[2]) == 1
    assert "tls.crt     default/expiring-tls" in output
    assert "CertificateAuthorityData for workload cluster in workload-kubeconfig" in output
    assert "ClientCertificateData for workload-admin user in second-kubeconfig" in output


def test_format_report_yaml():
    report = check_expiration(api=get_api(), threshold_days=30, now=NOW)

    output = yaml.safe_load(format_report(report, ReportFormat.YAML))

    assert list(output.keys()) == ["TlsSecret", "Kubeconf", "NodeCert"]
    assert output["TlsSecret"][0]["SecretName"] == "expiring-tls"
    assert output["Kubeconf"][0]["Cluster"][0]["Name"] == "workload"
    assert output["NodeCert"][0]["Data"][0]["CertificateName"] == "apiserver"


def test_format_report_json():
    report = check_expiration(api=get_api(), threshold_days=30, now=NOW)

    output = json.loads(format_report(report, ReportFormat.JSON))

    assert output["NodeCert"] == [
        {"NodeName": "cp1", "Data": [{"CertificateName": "apiserver", "ExpiryDate": "2021-08-10 13:25:00+00:00"}]}
    ]
