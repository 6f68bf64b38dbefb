#!/usr/bin/env python3
# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Host integration around an issuance: renewal schedule and nginx reload.

These are thin wrappers over ``systemctl``, ``crontab`` and ``nginx``. They
log and return False on failure instead of raising, since a failed reload or
schedule install must not hide a successful issuance.
"""
from typing import Callable, List, Optional
import logging
import os
import shlex
import shutil
import subprocess
import sys

from csr_gen import Identity

log = logging.getLogger(__name__)

SYSTEMD_UNIT_DIR = "/etc/systemd/system"
CRON_SCHEDULE = "17 3 1 * *"
CRON_LOG = "/var/log/zerossl_renew.log"

SERVICE_TEMPLATE = """[Unit]
Description=ZeroSSL {kind} cert renew for {value}
After=network-online.target

[Service]
Type=oneshot
ExecStart={command}
WorkingDirectory=/
User=root
"""

TIMER_TEMPLATE = """[Unit]
Description=Run ZeroSSL {kind} cert renew for {value} every 30 days

[Timer]
OnBootSec=5min
OnUnitActiveSec=30d
RandomizedDelaySec=2h
Persistent=true

[Install]
WantedBy=timers.target
"""


def _run(args: List[str], run: Callable = subprocess.run) -> Optional[subprocess.CompletedProcess]:
    cmd = " ".join(shlex.quote(a) for a in args)
    try:
        p = run(args, capture_output=True, text=True)
    except OSError as e:
        log.warning("%s failed: %s", cmd, e)
        return None
    if p.returncode != 0:
        log.warning("%s exited with %d: %s", cmd, p.returncode, (p.stderr or "").strip())
    else:
        log.debug("%s ok", cmd)
    return p


def _ok(p: Optional[subprocess.CompletedProcess]) -> bool:
    return p is not None and p.returncode == 0


def renew_argv(settings_path: str) -> List[str]:
    return [sys.executable, "-m", "autossl", "--renew", "--settings", settings_path]


def unit_name(identity: Identity) -> str:
    return f"zerossl-{identity.kind}-{identity.safe_name.replace(':', '_')}"


def install_systemd_timer(identity: Identity, settings_path: str,
                          unit_dir: str = SYSTEMD_UNIT_DIR,
                          run: Callable = subprocess.run) -> bool:
    name = unit_name(identity)
    command = " ".join(shlex.quote(a) for a in renew_argv(settings_path))
    service = os.path.join(unit_dir, f"{name}.service")
    timer = os.path.join(unit_dir, f"{name}.timer")
    try:
        with open(service, "w") as f:
            f.write(SERVICE_TEMPLATE.format(kind=identity.kind, value=identity.value, command=command))
        with open(timer, "w") as f:
            f.write(TIMER_TEMPLATE.format(kind=identity.kind, value=identity.value))
    except OSError as e:
        log.warning("Cannot write systemd units in %s: %s", unit_dir, e)
        return False
    if not _ok(_run(["systemctl", "daemon-reload"], run)):
        return False
    if not _ok(_run(["systemctl", "enable", "--now", f"{name}.timer"], run)):
        return False
    log.info("Installed systemd timer %s.timer (renewal every 30 days)", name)
    return True


def install_cron(settings_path: str, run: Callable = subprocess.run) -> bool:
    command = " ".join(shlex.quote(a) for a in renew_argv(settings_path))
    line = f"{CRON_SCHEDULE} {command} >> {CRON_LOG} 2>&1"
    current = _run(["crontab", "-l"], run)
    existing = current.stdout.splitlines() if _ok(current) else []
    # replace an earlier entry for the same settings file
    quoted = shlex.quote(settings_path)
    lines = [entry for entry in existing if quoted not in entry]
    lines.append(line)
    try:
        p = run(["crontab", "-"], input="\n".join(lines) + "\n", capture_output=True, text=True)
    except OSError as e:
        log.warning("crontab failed: %s", e)
        return False
    if p.returncode != 0:
        log.warning("crontab exited with %d: %s", p.returncode, (p.stderr or "").strip())
        return False
    log.info("Installed cron entry: renewal at 03:17 on the 1st of every month")
    return True


def install_schedule(identity: Identity, settings_path: str,
                     unit_dir: str = SYSTEMD_UNIT_DIR, run: Callable = subprocess.run) -> bool:
    """Prefer a systemd timer when running as root on systemd, else cron."""
    is_root = hasattr(os, "geteuid") and os.geteuid() == 0
    if is_root and shutil.which("systemctl"):
        if install_systemd_timer(identity, settings_path, unit_dir, run):
            return True
        log.info("Falling back to cron")
    return install_cron(settings_path, run)


def reload_nginx(run: Callable = subprocess.run) -> bool:
    """Reload nginx when installed and its configuration tests clean."""
    if not shutil.which("nginx"):
        log.debug("nginx not found, skipping reload")
        return False
    if not _ok(_run(["nginx", "-t"], run)):
        log.warning("nginx -t failed, not reloading")
        return False
    if _ok(_run(["systemctl", "reload", "nginx"], run)) or _ok(_run(["nginx", "-s", "reload"], run)):
        log.info("Reloaded nginx")
        return True
    return False
