#!/usr/bin/env python3
# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Publish HTTP file-validation tokens.

A token is served either from an existing web root (the file is written into
it and removed afterwards) or from a temporary directory served by a small
``http.server`` running in a background thread on port 80.

The existing web root must be reachable over plain HTTP on port 80 without a
redirect to HTTPS; that is the operator's job, this module only warns about
it in ``check_reachable``.
"""
from dataclasses import dataclass
from functools import partial
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
import errno
import logging
import os
import shutil
import socket
import tempfile
import threading

import requests

from autossl_errors import AuthorityError, HostEnvironmentError, PrivilegeRequired
from zerossl_client import ChallengeToken

log = logging.getLogger(__name__)


class QuietHandler(SimpleHTTPRequestHandler):
    def log_message(self, format, *args):
        log.debug("challenge server: %s - %s", self.address_string(), format % args)


class DualStackServer(ThreadingHTTPServer):
    address_family = socket.AF_INET6

    def server_bind(self):
        # accept IPv4-mapped connections as well
        v6only = getattr(socket, "IPV6_V6ONLY", None)
        if v6only is not None:
            try:
                self.socket.setsockopt(socket.IPPROTO_IPV6, v6only, 0)
            except OSError:
                log.debug("Could not clear IPV6_V6ONLY", exc_info=True)
        super().server_bind()


@dataclass
class PublishedChallenge:
    token: ChallengeToken
    file_path: str
    temp_dir: Optional[str] = None
    server: Optional[ThreadingHTTPServer] = None
    thread: Optional[threading.Thread] = None
    released: bool = False

    @property
    def port(self) -> Optional[int]:
        return self.server.server_address[1] if self.server else None


def challenge_file_path(root: str, relative_path: str) -> str:
    """Join ``relative_path`` under ``root``, refusing paths that escape it."""
    root = os.path.abspath(root)
    target = os.path.normpath(os.path.join(root, relative_path.lstrip("/")))
    if target == root or os.path.commonpath([root, target]) != root:
        raise AuthorityError(f"validation path {relative_path!r} escapes the web root")
    return target


def write_challenge_file(root: str, token: ChallengeToken) -> str:
    path = challenge_file_path(root, token.relative_path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(token.content)
    os.chmod(path, 0o644)
    return path


class ChallengePublisher:
    def __init__(self, port: int = 80, bind: Optional[str] = None):
        self.port = port
        self.bind = bind

    def publish(self, token: ChallengeToken, webroot: Optional[str] = None,
                temp_base: Optional[str] = None) -> PublishedChallenge:
        if webroot:
            path = write_challenge_file(webroot, token)
            log.info("Wrote %s; it must be served over plain HTTP on port 80", path)
            return PublishedChallenge(token=token, file_path=path)

        temp_dir = tempfile.mkdtemp(prefix="autossl-webroot-", dir=temp_base)
        try:
            path = write_challenge_file(temp_dir, token)
            server = self._start_server(temp_dir)
        except BaseException:
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise
        thread = threading.Thread(target=server.serve_forever, name="challenge-http", daemon=True)
        thread.start()
        log.info("No web root set, serving challenge from a temporary HTTP server on port %d",
                 server.server_address[1])
        return PublishedChallenge(token=token, file_path=path, temp_dir=temp_dir,
                                  server=server, thread=thread)

    def _start_server(self, root: str) -> ThreadingHTTPServer:
        handler = partial(QuietHandler, directory=root)
        try:
            if self.bind is None and socket.has_ipv6:
                try:
                    return DualStackServer(("::", self.port), handler)
                except PermissionError:
                    raise
                except OSError as e:
                    if e.errno == errno.EADDRINUSE:
                        raise
                    log.debug("IPv6 bind failed (%s), falling back to IPv4", e)
            return ThreadingHTTPServer((self.bind or "0.0.0.0", self.port), handler)
        except PermissionError:
            raise PrivilegeRequired(
                f"binding port {self.port} needs root privileges; run as root or set a web root")
        except OSError as e:
            raise HostEnvironmentError(f"cannot listen on port {self.port}: {e}")

    def unpublish(self, published: PublishedChallenge) -> None:
        """Stop the temporary server and remove the challenge file. Never raises."""
        if published.released:
            return
        published.released = True
        if published.server is not None:
            try:
                published.server.shutdown()
                published.server.server_close()
            except Exception as e:
                log.warning("Failed to stop challenge server: %s", e)
            if published.thread is not None:
                published.thread.join(timeout=5)
            log.info("Stopped temporary challenge server")
        if published.temp_dir:
            shutil.rmtree(published.temp_dir, ignore_errors=True)
        else:
            try:
                os.remove(published.file_path)
                log.debug("Removed %s", published.file_path)
            except FileNotFoundError:
                pass
            except OSError as e:
                log.warning("Failed to remove challenge file %s: %s", published.file_path, e)


def check_reachable(token: ChallengeToken, session: Optional[requests.Session] = None,
                    timeout: int = 10) -> bool:
    """Fetch the verification URL once and warn if it will not validate.

    Redirects are not followed: the authority does not follow them either.
    """
    if not token.verification_url:
        return False
    getter = session or requests
    try:
        r = getter.get(token.verification_url, allow_redirects=False, timeout=timeout)
    except requests.RequestException as e:
        log.warning("Could not fetch %s from this host (%s); continuing", token.verification_url, e)
        return False
    if 300 <= r.status_code < 400:
        log.warning("%s redirects to %s; plain HTTP on port 80 must serve the file without redirect",
                    token.verification_url, r.headers.get("Location"))
        return False
    if r.status_code != 200 or r.content.strip() != token.content.strip():
        log.warning("%s returned HTTP %s with unexpected content", token.verification_url, r.status_code)
        return False
    log.info("Challenge file is reachable at %s", token.verification_url)
    return True
