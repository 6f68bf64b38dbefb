"""
Tests for the renewal schedule and nginx reload helpers.
"""

import subprocess
from unittest.mock import patch

import renewal
from csr_gen import parse_identity

SETTINGS = "/etc/zerossl-ip/203.0.113.10/state/settings.yaml"


class FakeRun:
    """Records commands and answers with canned return codes."""

    def __init__(self, codes=None, stdout=""):
        self.codes = codes or {}
        self.stdout = stdout
        self.calls = []

    def __call__(self, args, **kwargs):
        self.calls.append((tuple(args), kwargs))
        code = self.codes.get(tuple(args), 0)
        if isinstance(code, Exception):
            raise code
        return subprocess.CompletedProcess(args, code, stdout=self.stdout, stderr="")

    def commands(self):
        return [c[0] for c in self.calls]


def test_unit_name_is_filesystem_safe():
    assert renewal.unit_name(parse_identity("203.0.113.10")) == "zerossl-ip-203.0.113.10"
    assert ":" not in renewal.unit_name(parse_identity("2001:db8::1"))


def test_renew_command_points_at_settings():
    argv = renewal.renew_argv(SETTINGS)
    assert argv[1:] == ["-m", "autossl", "--renew", "--settings", SETTINGS]


def test_systemd_timer_written_and_enabled(tmp_path):
    run = FakeRun()
    identity = parse_identity("203.0.113.10")

    assert renewal.install_systemd_timer(identity, SETTINGS, str(tmp_path), run) is True

    service = (tmp_path / "zerossl-ip-203.0.113.10.service").read_text()
    timer = (tmp_path / "zerossl-ip-203.0.113.10.timer").read_text()
    assert "Type=oneshot" in service
    assert f"--renew --settings {SETTINGS}" in service
    assert "OnUnitActiveSec=30d" in timer
    assert "Persistent=true" in timer
    assert run.commands() == [
        ("systemctl", "daemon-reload"),
        ("systemctl", "enable", "--now", "zerossl-ip-203.0.113.10.timer"),
    ]


def test_systemd_failure_reports_false(tmp_path):
    run = FakeRun({("systemctl", "daemon-reload"): 1})
    assert renewal.install_systemd_timer(parse_identity("example.com"), SETTINGS, str(tmp_path), run) is False


def test_unwritable_unit_dir(tmp_path):
    run = FakeRun()
    missing = str(tmp_path / "does-not-exist")
    assert renewal.install_systemd_timer(parse_identity("example.com"), SETTINGS, missing, run) is False
    assert run.calls == []


def test_cron_entry_replaces_previous_one():
    existing = "\n".join([
        "0 1 * * * /usr/bin/backup",
        f"17 3 1 * * /usr/bin/python3 -m autossl --renew --settings {SETTINGS} >> /var/log/x 2>&1",
    ]) + "\n"
    run = FakeRun(stdout=existing)

    assert renewal.install_cron(SETTINGS, run) is True

    args, kwargs = run.calls[-1]
    assert args == ("crontab", "-")
    lines = kwargs["input"].splitlines()
    assert lines[0] == "0 1 * * * /usr/bin/backup"
    assert len([entry for entry in lines if SETTINGS in entry]) == 1
    assert lines[-1].startswith("17 3 1 * * ")
    assert lines[-1].endswith(">> /var/log/zerossl_renew.log 2>&1")


def test_cron_without_existing_crontab():
    run = FakeRun({("crontab", "-l"): 1})
    assert renewal.install_cron(SETTINGS, run) is True
    assert run.calls[-1][1]["input"].count("\n") == 1


def test_cron_missing_binary():
    run = FakeRun({("crontab", "-l"): FileNotFoundError(2, "crontab")})
    run.codes[("crontab", "-")] = FileNotFoundError(2, "crontab")
    assert renewal.install_cron(SETTINGS, run) is False


def test_schedule_falls_back_to_cron_when_not_root(tmp_path):
    run = FakeRun()
    with patch.object(renewal.os, "geteuid", return_value=1000):
        assert renewal.install_schedule(parse_identity("example.com"), SETTINGS, str(tmp_path), run)
    assert ("crontab", "-") in run.commands()
    assert list(tmp_path.iterdir()) == []


def test_schedule_prefers_systemd_as_root(tmp_path):
    run = FakeRun()
    with patch.object(renewal.os, "geteuid", return_value=0), \
            patch.object(renewal.shutil, "which", return_value="/bin/systemctl"):
        assert renewal.install_schedule(parse_identity("example.com"), SETTINGS, str(tmp_path), run)
    assert ("crontab", "-") not in run.commands()
    assert (tmp_path / "zerossl-domain-example.com.timer").exists()


def test_reload_nginx_skipped_when_absent():
    run = FakeRun()
    with patch.object(renewal.shutil, "which", return_value=None):
        assert renewal.reload_nginx(run) is False
    assert run.calls == []


def test_reload_nginx_requires_clean_config():
    run = FakeRun({("nginx", "-t"): 1})
    with patch.object(renewal.shutil, "which", return_value="/usr/sbin/nginx"):
        assert renewal.reload_nginx(run) is False
    assert run.commands() == [("nginx", "-t")]


def test_reload_nginx_falls_back_to_signal():
    run = FakeRun({("systemctl", "reload", "nginx"): FileNotFoundError(2, "systemctl")})
    with patch.object(renewal.shutil, "which", return_value="/usr/sbin/nginx"):
        assert renewal.reload_nginx(run) is True
    assert run.commands()[-1] == ("nginx", "-s", "reload")
