#!/usr/bin/env python3
# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Failure types raised while issuing a certificate.

Every failure carries an optional ``payload``: the last response body seen
from the certificate authority, printed by the CLI to help diagnose quota,
CSR or plan problems.
"""
from typing import Optional


class IssuanceError(Exception):
    def __init__(self, message: str, payload: Optional[str] = None):
        super().__init__(message)
        self.payload = payload


class ConfigurationError(IssuanceError):
    """Bad or missing input: identity, credential, key spec, settings."""


class UnsupportedKeySpec(ConfigurationError):
    pass


class AuthorityError(IssuanceError):
    """The certificate authority rejected a request or could not be reached."""


class OrderCreationFailed(AuthorityError):
    def __init__(self, reason: str, payload: Optional[str] = None):
        super().__init__(f"order creation failed: {reason}", payload)
        self.reason = reason


class NoValidationInfo(AuthorityError):
    pass


class DownloadFailed(AuthorityError):
    pass


class ValidationTimeout(IssuanceError):
    pass


class IssuanceFailed(IssuanceError):
    """The authority reported a terminal status for the order."""

    def __init__(self, status: str, payload: Optional[str] = None):
        super().__init__(f"order ended with status {status!r}", payload)
        self.status = status


class IssuanceInterrupted(IssuanceError):
    pass


class HostEnvironmentError(IssuanceError):
    """The local host cannot perform a step (port in use, missing tool)."""


class PrivilegeRequired(HostEnvironmentError):
    pass


class InstallFailed(IssuanceError):
    pass
