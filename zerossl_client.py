#!/usr/bin/env python3
# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Client for the ZeroSSL-style certificate REST API.

This module wraps the handful of calls needed for HTTP file validation:
- create a certificate order from a CSR
- read the file-validation token for the order
- trigger validation and poll the order status
- download the issued certificate and CA bundle

The access key is sent as the ``access_key`` query parameter on every call
and is never written to the log.

Responses are not perfectly consistent between API versions, so values are
read with small ordered lists of extraction strategies (see
``ORDER_ID_STRATEGIES`` and friends). Each strategy returns a value or None
and the first value found wins.
"""
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional
from urllib.parse import urlsplit
import io
import logging
import zipfile

import requests

from autossl_errors import (AuthorityError, ConfigurationError, DownloadFailed,
                            NoValidationInfo, OrderCreationFailed)

log = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.zerossl.com"
HTTP_CSR_HASH = "HTTP_CSR_HASH"


@dataclass(frozen=True)
class ChallengeToken:
    relative_path: str
    content: bytes
    verification_url: str = ""


@dataclass
class CertificateBundle:
    leaf: bytes
    intermediates: bytes = b""
    private_key: bytes = b""

    @property
    def fullchain(self) -> bytes:
        """Leaf followed by the intermediates; just the leaf when there is no chain."""
        if not self.intermediates:
            return self.leaf
        leaf = self.leaf if self.leaf.endswith(b"\n") else self.leaf + b"\n"
        return leaf + self.intermediates


def first_match(strategies: Iterable[Callable], *args):
    for strategy in strategies:
        value = strategy(*args)
        if value:
            return value
    return None


# --- order id ---------------------------------------------------------------

def _top_level_id(payload: dict):
    return payload.get("id")


def _nested_certificate_id(payload: dict):
    cert = payload.get("certificate")
    return cert.get("id") if isinstance(cert, dict) else None


ORDER_ID_STRATEGIES = [_top_level_id, _nested_certificate_id]


# --- order status -----------------------------------------------------------

def _status_field(payload: dict):
    return payload.get("status")


def _validation_status_field(payload: dict):
    return payload.get("validation_status")


STATUS_STRATEGIES = [_status_field, _validation_status_field]

# The documented order endpoint first, then the status endpoints some API
# versions expose. Each is (path template, extra query params).
STATUS_ENDPOINTS = [
    ("/certificates/{id}", None),
    ("/certificates/{id}/status", None),
    ("/verification/status", "certificate_id"),
]


# --- validation token -------------------------------------------------------

def _exact_entry(methods: dict, identity_value: str):
    entry = methods.get(identity_value)
    return entry if isinstance(entry, dict) else None


def _first_entry(methods: dict, identity_value: str):
    for key, entry in methods.items():
        if isinstance(entry, dict):
            log.warning("No validation entry for %s, using the entry for %s", identity_value, key)
            return entry
    return None


TOKEN_ENTRY_STRATEGIES = [_exact_entry, _first_entry]


def _path_field(entry: dict):
    path = entry.get("file_validation_path")
    return path if isinstance(path, str) else None


def _path_from_url(entry: dict):
    url = entry.get("file_validation_url_http") or entry.get("file_validation_url_https")
    return urlsplit(url).path if isinstance(url, str) else None


TOKEN_PATH_STRATEGIES = [_path_field, _path_from_url]


def _token_content(entry: dict) -> bytes:
    content = entry.get("file_validation_content")
    if isinstance(content, list):
        content = "\n".join(str(line) for line in content)
    if content is None:
        return b""
    if isinstance(content, bytes):
        return content
    return str(content).encode()


# --- certificate download ---------------------------------------------------

LEAF_NAMES = ("certificate.crt", "certificate")
CHAIN_NAMES = ("ca_bundle.crt", "ca_bundle")


def _as_bytes(value) -> bytes:
    if not value:
        return b""
    return value.encode() if isinstance(value, str) else bytes(value)


def bundle_from_archive(data: bytes) -> Optional[CertificateBundle]:
    """Read ``certificate.crt`` and ``ca_bundle.crt`` from a zip archive."""
    if not data or not zipfile.is_zipfile(io.BytesIO(data)):
        return None
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        members = {name.rsplit("/", 1)[-1]: name for name in zf.namelist()}
        leaf = next((zf.read(members[n]) for n in LEAF_NAMES if n in members), b"")
        chain = next((zf.read(members[n]) for n in CHAIN_NAMES if n in members), b"")
    if not leaf.strip():
        return None
    return CertificateBundle(leaf=leaf, intermediates=chain)


def bundle_from_json(payload) -> Optional[CertificateBundle]:
    """Read PEM strings from a ``download/return`` style JSON body."""
    if not isinstance(payload, dict):
        return None
    leaf = next((_as_bytes(payload[n]) for n in LEAF_NAMES if payload.get(n)), b"")
    chain = next((_as_bytes(payload[n]) for n in CHAIN_NAMES if payload.get(n)), b"")
    if not leaf.strip():
        return None
    return CertificateBundle(leaf=leaf, intermediates=chain)


class AuthorityClient:
    def __init__(self, access_key: str, api_base: str = DEFAULT_API_BASE,
                 session: Optional[requests.Session] = None, timeout: int = 30):
        if not access_key:
            raise ConfigurationError("an API access key is required")
        self.access_key = access_key
        self.api_base = api_base.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        # body of the most recent response, kept for error reports
        self.last_body: Optional[str] = None

    def _request(self, method: str, path: str, params: Optional[dict] = None,
                 data: Optional[dict] = None) -> requests.Response:
        query = {"access_key": self.access_key}
        if params:
            query.update(params)
        url = f"{self.api_base}{path}"
        log.debug("%s %s", method, url)
        try:
            r = self.session.request(method, url, params=query, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            # the exception text may include the full URL with the access key
            raise AuthorityError(f"{method} {path} failed: {type(e).__name__}", self.last_body)
        try:
            self.last_body = r.content.decode("utf-8")
        except UnicodeDecodeError:
            self.last_body = f"<{len(r.content)} bytes of binary data>"
        log.debug("%s %s -> %s", method, path, r.status_code)
        return r

    @staticmethod
    def _json(r: requests.Response):
        try:
            return r.json()
        except ValueError:
            return None

    def create_order(self, csr_pem: bytes, domains: str, validity_days: int = 90,
                     strict: bool = True) -> str:
        """Submit the CSR and return the new order id. Never retried."""
        data = {
            "certificate_csr": csr_pem.decode() if isinstance(csr_pem, bytes) else csr_pem,
            "certificate_domains": domains,
            "certificate_validity_days": str(validity_days),
            "strict_domains": "1" if strict else "0",
        }
        r = self._request("POST", "/certificates", data=data)
        payload = self._json(r)
        order_id = first_match(ORDER_ID_STRATEGIES, payload) if isinstance(payload, dict) else None
        if not order_id:
            raise OrderCreationFailed(self._failure_reason(r, payload), self.last_body)
        log.info("Created certificate order %s", order_id)
        return str(order_id)

    @staticmethod
    def _failure_reason(r: requests.Response, payload) -> str:
        if isinstance(payload, dict):
            err = payload.get("error")
            if isinstance(err, dict):
                return str(err.get("type") or err.get("info") or err.get("code") or "unknown error")
            if err:
                return str(err)
        if r.status_code >= 400:
            return f"HTTP {r.status_code}"
        return "response has no order id"

    def fetch_order(self, order_id: str) -> dict:
        r = self._request("GET", f"/certificates/{order_id}")
        payload = self._json(r)
        if not isinstance(payload, dict):
            raise AuthorityError(f"order {order_id}: response is not a JSON object", self.last_body)
        return payload

    def fetch_validation_token(self, order_id: str, identity_value: str) -> ChallengeToken:
        """Return the HTTP file-validation token for ``identity_value``.

        Falls back to the first available entry when the authority keys the
        validation info differently from the submitted identity.
        """
        payload = self.fetch_order(order_id)
        validation = payload.get("validation") or {}
        methods = validation.get("other_methods") if isinstance(validation, dict) else None
        if not isinstance(methods, dict) or not methods:
            raise NoValidationInfo(f"order {order_id} has no validation info", self.last_body)
        entry = first_match(TOKEN_ENTRY_STRATEGIES, methods, identity_value)
        path = first_match(TOKEN_PATH_STRATEGIES, entry) if entry else None
        if not path:
            raise NoValidationInfo(f"order {order_id} has no file validation path", self.last_body)
        if not path.startswith("/"):
            path = "/" + path
        url = entry.get("file_validation_url_http")
        return ChallengeToken(relative_path=path, content=_token_content(entry),
                              verification_url=url if isinstance(url, str) else "")

    def trigger_challenge(self, order_id: str, method: str = HTTP_CSR_HASH) -> bool:
        """Ask the authority to validate; returns whether it acknowledged."""
        r = self._request("POST", f"/certificates/{order_id}/challenges",
                          data={"validation_method": method})
        if r.status_code >= 400:
            return False
        payload = self._json(r)
        if isinstance(payload, dict) and (payload.get("success") is False or payload.get("error")):
            return False
        return True

    def poll_status(self, order_id: str) -> Optional[str]:
        """Read the order status once. None when no endpoint reports one."""
        for template, id_param in STATUS_ENDPOINTS:
            params = {id_param: order_id} if id_param else None
            r = self._request("GET", template.format(id=order_id), params=params)
            if r.status_code == 404 or not r.content.strip():
                continue
            payload = self._json(r)
            if not isinstance(payload, dict):
                continue
            status = first_match(STATUS_STRATEGIES, payload)
            if status:
                return str(status).lower()
        return None

    def download_bundle(self, order_id: str) -> CertificateBundle:
        """Fetch the issued certificate as a zip archive, else as inline JSON."""
        r = self._request("GET", f"/certificates/{order_id}/download")
        bundle = bundle_from_archive(r.content) if r.status_code < 400 else None
        if bundle is None:
            r = self._request("GET", f"/certificates/{order_id}/download/return")
            bundle = bundle_from_json(self._json(r)) if r.status_code < 400 else None
        if bundle is None:
            raise DownloadFailed(f"order {order_id}: no certificate in download response", self.last_body)
        log.info("Downloaded certificate for order %s", order_id)
        return bundle


def domains_csv(values: List[str]) -> str:
    return ",".join(values)
