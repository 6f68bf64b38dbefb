"""
Shared fixtures: a throwaway CA and an in-memory fake of the certificate API.
"""

import io
import json
import zipfile
from datetime import datetime, timedelta, timezone
from urllib.parse import urlsplit

import pytest
import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from settings import IssuanceConfig


class ScratchCA:
    def __init__(self):
        self.key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Intermediate CA")])
        now = datetime.now(timezone.utc)
        self.cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(self.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.key, hashes.SHA256())
        )
        self.pem = self.cert.public_bytes(serialization.Encoding.PEM)

    def sign(self, csr_pem: bytes, days: int = 90) -> bytes:
        csr = x509.load_pem_x509_csr(csr_pem)
        now = datetime.now(timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(self.cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + timedelta(days=days))
        )
        for ext in csr.extensions:
            builder = builder.add_extension(ext.value, critical=ext.critical)
        return builder.sign(self.key, hashes.SHA256()).public_bytes(serialization.Encoding.PEM)


def make_response(status_code=200, body=b"", headers=None):
    r = requests.Response()
    r.status_code = status_code
    if isinstance(body, (dict, list)):
        body = json.dumps(body).encode()
    elif isinstance(body, str):
        body = body.encode()
    r._content = body
    r.headers.update(headers or {})
    return r


def zip_bundle(leaf: bytes, chain: bytes) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("certificate.crt", leaf)
        if chain:
            zf.writestr("ca_bundle.crt", chain)
    return buf.getvalue()


class FakeAuthority:
    """Stands in for ``requests.Session`` and answers like the certificate API.

    Before validation is triggered the order reports ``draft``; afterwards
    each status read consumes the next entry of ``statuses`` (the last one
    repeats).
    """

    def __init__(self, ca, order_id="abc123", statuses=("issued",),
                 token_path="/.well-known/pki-validation/XYZ.txt", token_content="hello-token",
                 token_key=None, create_payload=None, download="zip", chain=True):
        self.ca = ca
        self.order_id = order_id
        self.statuses = list(statuses)
        self.token_path = token_path
        self.token_content = token_content
        self.token_key = token_key
        self.create_payload = create_payload
        self.download = download
        self.chain = chain
        self.calls = []
        self.csr_pem = None
        self.domains = None
        self.triggered = False
        self.status_reads = 0
        self.leaf = None

    # requests.Session interface used by AuthorityClient
    def request(self, method, url, params=None, data=None, timeout=None):
        path = urlsplit(url).path
        self.calls.append((method, path, dict(params or {}), dict(data or {})))
        assert params and params.get("access_key"), "access key must be sent as query parameter"
        oid = self.order_id
        if method == "POST" and path == "/certificates":
            self.csr_pem = data["certificate_csr"].encode()
            self.domains = data["certificate_domains"]
            if self.create_payload is not None:
                return make_response(200, self.create_payload)
            return make_response(200, {"id": oid, "status": "draft"})
        if method == "GET" and path == f"/certificates/{oid}":
            key = self.token_key or self.domains
            return make_response(200, {
                "id": oid,
                "status": self._status(),
                "validation": {"other_methods": {key: {
                    "file_validation_url_http": f"http://{self.domains}{self.token_path}",
                    "file_validation_path": self.token_path,
                    "file_validation_content": self.token_content,
                }}},
            })
        if method == "POST" and path == f"/certificates/{oid}/challenges":
            self.triggered = True
            return make_response(200, {"id": oid, "status": "pending_validation"})
        if method == "GET" and path == f"/certificates/{oid}/download":
            if self.download != "zip":
                return make_response(404, {"success": False})
            return make_response(200, zip_bundle(self._leaf(), self.ca.pem if self.chain else b""),
                                 {"Content-Type": "application/zip"})
        if method == "GET" and path == f"/certificates/{oid}/download/return":
            payload = {"certificate.crt": self._leaf().decode()}
            if self.chain:
                payload["ca_bundle.crt"] = self.ca.pem.decode()
            return make_response(200, payload)
        return make_response(404, "Not Found")

    def _status(self):
        if not self.triggered:
            return "draft"
        index = min(self.status_reads, len(self.statuses) - 1)
        self.status_reads += 1
        return self.statuses[index]

    def _leaf(self):
        if self.leaf is None:
            self.leaf = self.ca.sign(self.csr_pem)
        return self.leaf

    def count(self, method, path):
        return sum(1 for c in self.calls if c[0] == method and c[1] == path)


@pytest.fixture(scope="session")
def ca():
    return ScratchCA()


@pytest.fixture
def fake_authority(ca):
    return FakeAuthority(ca)


@pytest.fixture
def config(tmp_path):
    """A validated config that never touches real directories or port 80."""
    cfg = IssuanceConfig(
        identity="203.0.113.10",
        kind="ip",
        access_key="test-key",
        key_type="ec:prime256v1",
        live_dir=str(tmp_path / "site" / "live"),
        state_dir=str(tmp_path / "site" / "state"),
        poll_interval=0,
        token_retry_delay=0,
        self_check=False,
        reload_nginx=False,
    )
    return cfg.validate()
