#!/usr/bin/env python3
# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Issuance settings: YAML file, environment variables and defaults.

Precedence, lowest first: built-in defaults, the YAML settings file,
environment variables, then explicit command-line values. The first run
saves the resolved settings to ``<state_dir>/settings.yaml``
(mode 0600, it holds the access key) so ``--renew`` can run unattended.
"""
from dataclasses import asdict, dataclass, fields
from typing import Mapping, Optional
import logging
import os

import yaml

from autossl_errors import ConfigurationError
from csr_gen import Identity, KeySpec, parse_identity
from zerossl_client import DEFAULT_API_BASE

log = logging.getLogger(__name__)

SETTINGS_FILE = "settings.yaml"

# environment variable -> setting name
ENV_VARS = {
    "ACCESS_KEY": "access_key",
    "MODE": "kind",
    "TARGET": "identity",
    "VALID_DAYS": "validity_days",
    "WEBROOT": "webroot",
    "LIVE_DIR": "live_dir",
    "STATE_DIR": "state_dir",
    "KEY_TYPE": "key_type",
    "DEBUG": "debug",
}


@dataclass
class IssuanceConfig:
    identity: str = ""
    kind: Optional[str] = None
    access_key: str = ""
    validity_days: int = 90
    key_type: str = "rsa:2048"
    webroot: Optional[str] = None
    live_dir: Optional[str] = None
    state_dir: Optional[str] = None
    api_base: str = DEFAULT_API_BASE
    poll_interval: float = 5.0
    poll_attempts: int = 36
    token_attempts: int = 3
    token_retry_delay: float = 2.0
    http_port: int = 80
    self_check: bool = True
    reload_nginx: bool = True
    renew_days: int = 30
    debug: bool = False

    def target(self) -> Identity:
        return parse_identity(self.identity, self.kind)

    def key_spec(self) -> KeySpec:
        return KeySpec.parse(self.key_type)

    def validate(self, require_credential: bool = True) -> "IssuanceConfig":
        ident = self.target()
        self.identity, self.kind = ident.value, ident.kind
        self.key_spec()
        if require_credential and not self.access_key:
            raise ConfigurationError("ACCESS_KEY (API access key) is required")
        if self.validity_days <= 0:
            raise ConfigurationError("validity days must be positive")
        if self.poll_attempts < 1 or self.token_attempts < 1:
            raise ConfigurationError("attempt counts must be at least 1")
        base = os.path.join(default_base_dir(), ident.safe_name)
        self.state_dir = self.state_dir or os.path.join(base, "state")
        self.live_dir = self.live_dir or os.path.join(base, "live")
        return self

    @property
    def settings_path(self) -> str:
        return os.path.join(self.state_dir, SETTINGS_FILE)


def default_base_dir() -> str:
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        return "/etc/zerossl-ip"
    return os.path.join(os.path.expanduser("~"), ".zerossl-ip")


def _coerce(name: str, value):
    """Convert a raw string/YAML value to the field's type."""
    if value is None or value == "":
        return None
    default = IssuanceConfig.__dataclass_fields__[name].default
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"invalid value for {name}: {value!r}")
    return str(value)


def merge(config: IssuanceConfig, values: Mapping) -> IssuanceConfig:
    """Overlay known, non-empty ``values`` onto ``config``."""
    known = {f.name for f in fields(IssuanceConfig)}
    for name, raw in values.items():
        if name not in known:
            log.debug("Ignoring unknown setting %s", name)
            continue
        value = _coerce(name, raw)
        if value is not None:
            setattr(config, name, value)
    return config


def apply_env(config: IssuanceConfig, environ: Optional[Mapping] = None) -> IssuanceConfig:
    environ = os.environ if environ is None else environ
    return merge(config, {name: environ.get(var) for var, name in ENV_VARS.items()})


def load_settings(path: str) -> dict:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigurationError(f"settings file {path} not found; run an initial issuance first")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"cannot parse {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping")
    return data


def save_settings(config: IssuanceConfig, path: Optional[str] = None) -> str:
    path = path or config.settings_path
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            yaml.safe_dump(asdict(config), f, default_flow_style=False, sort_keys=True)
        os.chmod(path, 0o600)
    except OSError as e:
        raise ConfigurationError(f"cannot save settings to {path}: {e}")
    log.info("Saved settings to %s", path)
    return path
