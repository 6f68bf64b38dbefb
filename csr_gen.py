#!/usr/bin/env python3
# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Private key and CSR generation for a single domain name or IP address.

The CSR carries exactly one Subject Alternative Name: ``DNS:<name>`` for a
domain identity, ``IP:<address>`` for an IP identity. The common name is set
to the same value for validators that still read CN.
"""
from dataclasses import dataclass
from typing import Optional, Tuple
import ipaddress
import logging
import os
import re

from cryptography import x509
from cryptography.x509 import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from autossl_errors import ConfigurationError, UnsupportedKeySpec

log = logging.getLogger(__name__)

DOMAIN = "domain"
IP = "ip"

DEFAULT_RSA_BITS = 2048
DEFAULT_EC_CURVE = "prime256v1"

EC_CURVES = {
    "prime256v1": ec.SECP256R1,
    "secp256r1": ec.SECP256R1,
    "p-256": ec.SECP256R1,
    "secp384r1": ec.SECP384R1,
    "p-384": ec.SECP384R1,
    "secp521r1": ec.SECP521R1,
    "p-521": ec.SECP521R1,
}

_LABEL = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$", re.I)


@dataclass(frozen=True)
class Identity:
    kind: str
    value: str

    @property
    def safe_name(self) -> str:
        """Name usable as a single path component (IPv6 colons are kept)."""
        return self.value.replace("/", "_")


@dataclass(frozen=True)
class KeySpec:
    algorithm: str
    param: str

    @classmethod
    def parse(cls, text: str) -> "KeySpec":
        """Parse ``rsa:<bits>`` or ``ec:<curve>``; a bare ``rsa``/``ec`` uses the default."""
        if not text:
            raise UnsupportedKeySpec("empty key spec")
        algo, _, param = text.strip().partition(":")
        algo = algo.lower()
        if algo == "rsa":
            return cls("rsa", param or str(DEFAULT_RSA_BITS))
        if algo == "ec":
            return cls("ec", param or DEFAULT_EC_CURVE)
        raise UnsupportedKeySpec(f"unsupported key spec {text!r} (examples: rsa:2048, ec:prime256v1)")

    def __str__(self):
        return f"{self.algorithm}:{self.param}"


@dataclass
class KeyMaterial:
    private_key_pem: bytes
    key_spec: KeySpec
    key_path: Optional[str] = None
    csr_path: Optional[str] = None


def is_hostname(value: str) -> bool:
    if not value or len(value) > 253:
        return False
    labels = value.rstrip(".").split(".")
    if len(labels) < 2:
        return False
    # an all-numeric last label would make this an IP literal in disguise
    if labels[-1].isdigit():
        return False
    return all(_LABEL.match(label) for label in labels)


def parse_identity(value: str, kind: Optional[str] = None) -> Identity:
    """Build an Identity, inferring the kind from the value when not given."""
    value = (value or "").strip()
    if not value:
        raise ConfigurationError("identity (domain or IP) is required")
    if kind is None:
        try:
            ipaddress.ip_address(value)
            kind = IP
        except ValueError:
            kind = DOMAIN
    kind = kind.lower()
    if kind == IP:
        try:
            return Identity(IP, str(ipaddress.ip_address(value)))
        except ValueError:
            raise ConfigurationError(f"{value!r} is not a valid IPv4/IPv6 address")
    if kind == DOMAIN:
        if not is_hostname(value):
            raise ConfigurationError(f"{value!r} is not a valid host name")
        return Identity(DOMAIN, value.rstrip(".").lower())
    raise ConfigurationError(f"unknown identity kind {kind!r} (expected domain or ip)")


def generate_private_key(key_spec: KeySpec):
    if key_spec.algorithm == "rsa":
        try:
            bits = int(key_spec.param)
        except ValueError:
            raise UnsupportedKeySpec(f"RSA key size must be a number, got {key_spec.param!r}")
        if bits < 2048:
            raise UnsupportedKeySpec(f"RSA key size {bits} is too small")
        return rsa.generate_private_key(public_exponent=65537, key_size=bits)
    if key_spec.algorithm == "ec":
        curve = EC_CURVES.get(key_spec.param.lower())
        if curve is None:
            raise UnsupportedKeySpec(f"unsupported EC curve {key_spec.param!r}")
        return ec.generate_private_key(curve())
    raise UnsupportedKeySpec(f"unsupported key algorithm {key_spec.algorithm!r}")


def subject_alt_name(identity: Identity) -> x509.GeneralName:
    if identity.kind == IP:
        return x509.IPAddress(ipaddress.ip_address(identity.value))
    return x509.DNSName(identity.value)


def create_csr(identity: Identity, key) -> bytes:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, identity.value)])
    csr = x509.CertificateSigningRequestBuilder().subject_name(name).add_extension(
        x509.SubjectAlternativeName([subject_alt_name(identity)]), critical=False)
    csr = csr.sign(key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM)


def _write_private(path: str, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, 0o600)


def generate(identity: Identity, key_spec: Optional[KeySpec] = None,
             workdir: Optional[str] = None) -> Tuple[KeyMaterial, bytes]:
    """Create a fresh key and a CSR for ``identity``.

    When ``workdir`` is given, ``server.key`` (mode 0600) and ``server.csr``
    are written there as well.
    """
    if not isinstance(identity, Identity):
        raise ConfigurationError("identity must be an Identity")
    if key_spec is None:
        key_spec = KeySpec("rsa", str(DEFAULT_RSA_BITS))
    if not isinstance(key_spec, KeySpec) or not key_spec.param:
        raise UnsupportedKeySpec(f"unsupported key spec {key_spec!r}")

    key = generate_private_key(key_spec)
    csr_pem = create_csr(identity, key)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption())
    material = KeyMaterial(private_key_pem=key_pem, key_spec=key_spec)

    if workdir:
        material.key_path = os.path.join(workdir, "server.key")
        material.csr_path = os.path.join(workdir, "server.csr")
        _write_private(material.key_path, key_pem)
        with open(material.csr_path, "wb") as f:
            f.write(csr_pem)
    log.debug("Generated %s key and CSR for %s:%s", key_spec, identity.kind, identity.value)
    return material, csr_pem
