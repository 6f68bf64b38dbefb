#!/usr/bin/env python3
# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Command-line entry point: issue or renew a certificate for a domain or IP.

Usage:
    autossl --target www.example.com --access-key KEY [options]
    autossl --target 203.0.113.10 --access-key KEY
    autossl --renew --settings /etc/zerossl-ip/<target>/state/settings.yaml

Default behavior (first run):
    - Generates a key and CSR, orders a certificate and validates it over
      HTTP (existing --webroot, or a temporary server on port 80)
    - Installs key, certificate, CA bundle and full chain into the live dir
    - Saves the settings and installs a systemd timer (or cron entry) that
      runs --renew
    - Reloads nginx if present

Options:
    --renew: Re-issue from saved settings; skipped while the certificate is
             valid for more than --days days unless --force
    --list: Show the live certificate and its expiration, do not issue
    --no-schedule: Do not install the renewal timer/cron entry
    --no-reload: Do not reload nginx
"""
import argparse
import logging
import os
import signal
import sys
import threading

import live_install
import renewal
from autossl_errors import ConfigurationError, IssuanceError
from issuance import Orchestrator
from settings import IssuanceConfig, apply_env, load_settings, merge, save_settings

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autossl",
        description="Issue and renew ZeroSSL certificates for a domain or IP address")
    parser.add_argument("--settings", help="YAML settings file (required with --renew)")
    parser.add_argument("--target", dest="identity", help="Domain name or IPv4/IPv6 address")
    parser.add_argument("--mode", dest="kind", choices=["domain", "ip"],
                        help="Identity kind (default: guessed from --target)")
    parser.add_argument("--access-key", help="ZeroSSL API access key (or ACCESS_KEY)")
    parser.add_argument("--valid-days", dest="validity_days", type=int, help="Certificate validity in days")
    parser.add_argument("--key-type", help="rsa:<bits> or ec:<curve> (default rsa:2048)")
    parser.add_argument("--webroot", help="Existing web root served over plain HTTP on port 80")
    parser.add_argument("--live-dir", help="Directory for the installed certificate files")
    parser.add_argument("--state-dir", help="Directory for saved settings")
    parser.add_argument("--poll-attempts", type=int, help="Status checks before giving up (default 36)")
    parser.add_argument("--poll-interval", type=float, help="Seconds between status checks (default 5)")
    parser.add_argument("--renew", action="store_true", help="Renew using saved settings")
    parser.add_argument("--force", action="store_true", help="Renew regardless of expiration")
    parser.add_argument("--days", dest="renew_days", type=int,
                        help="With --renew, renew if the cert expires within DAYS (default 30)")
    parser.add_argument("--list", action="store_true", help="Show the live certificate and exit")
    parser.add_argument("--no-schedule", action="store_true", help="Do not install a renewal schedule")
    parser.add_argument("--no-reload", action="store_true", help="Do not reload nginx")
    parser.add_argument("--verbose", action="store_true")
    return parser


CLI_SETTINGS = ("identity", "kind", "access_key", "validity_days", "key_type", "webroot",
                "live_dir", "state_dir", "poll_attempts", "poll_interval", "renew_days")


def resolve_config(args) -> IssuanceConfig:
    config = IssuanceConfig()
    if args.renew:
        if not args.settings:
            raise ConfigurationError("--renew needs --settings pointing at a saved settings file")
        merge(config, load_settings(args.settings))
    else:
        if args.settings and os.path.exists(args.settings):
            merge(config, load_settings(args.settings))
        apply_env(config)
    merge(config, {name: getattr(args, name) for name in CLI_SETTINGS})
    if args.no_reload:
        config.reload_nginx = False
    return config.validate(require_credential=not args.list)


def print_paths(paths: dict) -> None:
    print()
    print("Certificate files:")
    print(f"  Server Certificate:        {paths['cert']}")
    print(f"  Private Key:               {paths['key']}")
    print(f"  CA Bundle:                 {paths['ca_bundle']}")
    print(f"  Full Chain:                {paths['fullchain']}")
    print()
    print("Nginx example:")
    print(f"  ssl_certificate     {paths['fullchain']};")
    print(f"  ssl_certificate_key {paths['key']};")
    print()


def show_list(config: IssuanceConfig) -> None:
    print(f"{'Target':<40} {'Expires In':<15} {'Names'}")
    print("-" * 80)
    try:
        info = live_install.describe_live(config.live_dir)
    except ValueError as e:
        print(f"{config.identity:<40} {'ERROR':<15} {str(e)[:30]}")
        return
    if info is None:
        print(f"{config.identity:<40} {'NOT FOUND':<15} {config.live_dir}")
        return
    names, days = info
    status = "EXPIRED" if days < 0 else f"{days} days"
    print(f"{config.identity:<40} {status:<15} {', '.join(names)}")


def renewal_due(config: IssuanceConfig) -> bool:
    try:
        info = live_install.describe_live(config.live_dir)
    except ValueError as e:
        log.warning("Cannot read live certificate (%s), renewing", e)
        return True
    if info is None:
        return True
    days = info[1]
    if days <= config.renew_days:
        log.info("Certificate expires in %d days (<= %d), will renew", days, config.renew_days)
        return True
    log.info("Certificate is valid for %d more days, skipping", days)
    return False


def report_failure(e: IssuanceError) -> None:
    print(f"ERROR: {e}", file=sys.stderr)
    if e.payload:
        print("Last response from the certificate authority:", file=sys.stderr)
        print(e.payload, file=sys.stderr)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = resolve_config(args)
    except ConfigurationError as e:
        report_failure(e)
        return 2
    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.list:
        show_list(config)
        return 0

    if args.renew and not args.force and not renewal_due(config):
        return 0

    if not args.renew:
        try:
            save_settings(config)
        except ConfigurationError as e:
            report_failure(e)
            return 2

    cancel = threading.Event()
    in_main = threading.current_thread() is threading.main_thread()
    if in_main:
        previous = signal.signal(signal.SIGTERM, lambda signum, frame: cancel.set())
    try:
        result = Orchestrator(config, cancel_event=cancel).run()
    except IssuanceError as e:
        report_failure(e)
        return 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130
    finally:
        if in_main:
            signal.signal(signal.SIGTERM, previous if previous is not None else signal.SIG_DFL)

    if not args.renew and not args.no_schedule:
        log.info("Installing automatic renewal")
        renewal.install_schedule(result.identity, config.settings_path)
    if config.reload_nginx:
        renewal.reload_nginx()

    print_paths(result.paths)
    print("Renewal complete." if args.renew else "All done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
