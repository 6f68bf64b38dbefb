#!/usr/bin/env python3
# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Install an issued certificate into a stable "live" directory.

The live directory is a symlink into ``<parent>/archive/<release>``. A new
certificate set is fully written to a fresh release directory, then the
symlink is swapped with a single ``os.replace``, so readers such as nginx see
either the old four files or the new four files, never a mix. After the swap
only the release the link pointed at before is removed; concurrent installs
end with the last swap winning and no dangling link.

A plain live directory left by an older layout is moved to
``archive/legacy-<id>`` before the first symlink is created. That one-time
migration leaves the live path missing for the moment between the rename and
the symlink, since a directory cannot be replaced by a link in one step.

Fixed file names under the live directory:
  - privkey.key    (0600)
  - cert.crt       (0644)
  - ca_bundle.crt  (0644)
  - fullchain.pem  (0644, leaf followed by the CA bundle)
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
import logging
import os
import shutil
import tempfile
import uuid

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from autossl_errors import InstallFailed
from zerossl_client import CertificateBundle

log = logging.getLogger(__name__)

KEY_FILE = "privkey.key"
CERT_FILE = "cert.crt"
CHAIN_FILE = "ca_bundle.crt"
FULLCHAIN_FILE = "fullchain.pem"

ARCHIVE_DIR = "archive"
STAGING_PREFIX = ".staging-"
LEGACY_PREFIX = "legacy-"


def live_paths(live_dir: str) -> Dict[str, str]:
    return {
        "cert": os.path.join(live_dir, CERT_FILE),
        "key": os.path.join(live_dir, KEY_FILE),
        "ca_bundle": os.path.join(live_dir, CHAIN_FILE),
        "fullchain": os.path.join(live_dir, FULLCHAIN_FILE),
    }


def archive_dir_for(live_dir: str) -> str:
    return os.path.join(os.path.dirname(os.path.abspath(live_dir)), ARCHIVE_DIR)


def check_bundle(bundle: CertificateBundle, verify_pair: bool = True) -> None:
    """Reject bundles that must not reach the live directory."""
    if not bundle.leaf or not bundle.leaf.strip():
        raise InstallFailed("certificate bundle has no leaf certificate")
    if not bundle.private_key or not bundle.private_key.strip():
        raise InstallFailed("certificate bundle has no private key")
    if not verify_pair:
        return
    try:
        cert = x509.load_pem_x509_certificate(bundle.leaf)
        key = serialization.load_pem_private_key(bundle.private_key, password=None)
    except ValueError as e:
        raise InstallFailed(f"cannot parse certificate or key: {e}")
    pub = serialization.PublicFormat.SubjectPublicKeyInfo
    if (cert.public_key().public_bytes(serialization.Encoding.DER, pub)
            != key.public_key().public_bytes(serialization.Encoding.DER, pub)):
        raise InstallFailed("certificate does not match the private key")


def _write_file(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.chmod(path, mode)


def _write_release(bundle: CertificateBundle, staging: str) -> None:
    _write_file(os.path.join(staging, KEY_FILE), bundle.private_key, 0o600)
    _write_file(os.path.join(staging, CERT_FILE), bundle.leaf, 0o644)
    _write_file(os.path.join(staging, CHAIN_FILE), bundle.intermediates, 0o644)
    _write_file(os.path.join(staging, FULLCHAIN_FILE), bundle.fullchain, 0o644)


def _swap(live_dir: str, release: str) -> Optional[str]:
    """Point ``live_dir`` at ``release`` with one rename.

    Returns the directory the live path pointed at before the swap, if any.
    """
    parent = os.path.dirname(live_dir)
    previous = None
    if os.path.islink(live_dir):
        previous = os.path.join(parent, os.readlink(live_dir))
    elif os.path.isdir(live_dir):
        # a plain directory from an older layout cannot be replaced atomically
        previous = os.path.join(archive_dir_for(live_dir), f"{LEGACY_PREFIX}{uuid.uuid4().hex[:8]}")
        log.warning("Moving plain live directory %s to %s", live_dir, previous)
        os.rename(live_dir, previous)
    tmp_link = os.path.join(parent, f".{os.path.basename(live_dir)}.{uuid.uuid4().hex[:8]}")
    os.symlink(os.path.relpath(release, parent), tmp_link)
    try:
        os.replace(tmp_link, live_dir)
    except OSError:
        os.unlink(tmp_link)
        raise
    return previous


def _prune(archive: str, previous: Optional[str], live_dir: str) -> None:
    """Remove the release ``live_dir`` pointed at before this install.

    Other releases are left alone: a concurrent install may have renamed its
    release into the archive and not swapped to it yet.
    """
    if not previous:
        return
    path = os.path.realpath(previous)
    if os.path.dirname(path) != os.path.realpath(archive) or path == os.path.realpath(live_dir):
        return
    try:
        shutil.rmtree(path)
        log.debug("Removed old release %s", path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("Failed to remove old release %s: %s", path, e)


def install(bundle: CertificateBundle, live_dir: str, verify_pair: bool = True) -> Dict[str, str]:
    """Install ``bundle`` under ``live_dir`` and return the live file paths.

    On any failure before the symlink swap the live directory is left as it
    was and the staging directory is removed.
    """
    check_bundle(bundle, verify_pair)
    live_dir = os.path.abspath(live_dir)
    archive = archive_dir_for(live_dir)
    staging = None
    try:
        os.makedirs(archive, exist_ok=True)
        staging = tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=archive)
        os.chmod(staging, 0o755)
        _write_release(bundle, staging)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        release = os.path.join(archive, f"{stamp}-{uuid.uuid4().hex[:8]}")
        os.rename(staging, release)
        staging = None
    except OSError as e:
        raise InstallFailed(f"cannot stage certificate files under {archive}: {e}")
    finally:
        if staging:
            shutil.rmtree(staging, ignore_errors=True)

    try:
        previous = _swap(live_dir, release)
    except OSError as e:
        shutil.rmtree(release, ignore_errors=True)
        raise InstallFailed(f"cannot switch {live_dir} to the new certificate: {e}")
    log.info("Installed certificate into %s", live_dir)
    _prune(archive, previous, live_dir)
    return live_paths(live_dir)


def days_until_expiry(pem_data: bytes) -> int:
    cert = x509.load_pem_x509_certificate(pem_data)
    not_after = cert.not_valid_after_utc
    delta = not_after - datetime.now(timezone.utc)
    return delta.days


def describe_live(live_dir: str) -> Optional[Tuple[List[str], int]]:
    """Return (subject alternative names, days until expiry) of the live cert."""
    path = live_paths(live_dir)["cert"]
    if not os.path.exists(path):
        return None
    with open(path, "rb") as f:
        pem = f.read()
    cert = x509.load_pem_x509_certificate(pem)
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        names = [str(n.value) for n in san]
    except x509.ExtensionNotFound:
        names = []
    return names, days_until_expiry(pem)
