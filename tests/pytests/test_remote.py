from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from vmdeploy import remote
from vmdeploy.remote import (
    DetectPackageManager,
    EnsureGroupMembership,
    EnsurePackage,
    EnsureServiceRunning,
    EnsureSymlink,
    Probe,
    RemoteCommandSpec,
    RemoteResult,
    Run,
    SshExecutor,
    WriteFileIfAbsent,
    build_rsync_cmd,
    build_ssh_base_cmd,
    ssh_failure_hint,
)


def test_spec_render_is_fail_fast_and_resolves_sudo():
    script = RemoteCommandSpec(operations=(Run("echo hi"),)).render()
    lines = script.splitlines()
    assert lines[0] == "set -euo pipefail"
    assert 'SUDO="sudo"' in script
    assert "DOCKER=" not in script
    assert lines[-1] == "echo hi"


def test_spec_render_with_docker_and_workdir():
    script = RemoteCommandSpec(operations=(), uses_docker=True, workdir="/home/deploy/web app").render()
    assert 'DOCKER="$SUDO docker"' in script
    assert 'COMPOSE="$DOCKER compose"' in script
    assert "cd '/home/deploy/web app'" in script


def test_detect_package_manager_fails_without_candidates():
    out = DetectPackageManager().render()
    assert "for candidate in apt-get dnf yum" in out
    assert "exit 3" in out
    assert "pkg_refresh()" in out


def test_ensure_package_only_refreshes_index_when_installing():
    out = EnsurePackage(
        name="nginx",
        check="command -v nginx >/dev/null 2>&1",
        apt_install="$SUDO apt-get install -y nginx",
        rpm_install='$SUDO "$PKG_MANAGER" install -y nginx',
    ).render()
    check_branch, install_branch = out.split("else", 1)
    assert "already installed" in check_branch
    assert "pkg_refresh" not in check_branch
    assert "pkg_refresh" in install_branch
    assert "::changed:: package:nginx" in install_branch


def test_ensure_service_running_checks_enabled_and_active():
    out = EnsureServiceRunning("docker").render()
    assert "systemctl is-enabled --quiet docker" in out
    assert "systemctl is-active --quiet docker" in out
    assert "$SUDO systemctl start docker" in out


def test_ensure_group_membership_reports_relogin_notice():
    out = EnsureGroupMembership("docker").render()
    assert 'usermod -aG docker "$REMOTE_USER"' in out
    assert "::notice::" in out
    assert "new login session" in out


def test_write_file_if_absent_uses_quoted_heredoc():
    out = WriteFileIfAbsent(path="/etc/nginx/sites-available/app.conf", content="proxy_set_header Host $host;").render()
    assert "if [ -f /etc/nginx/sites-available/app.conf ]; then" in out
    assert "<<'VMDEPLOY_EOF'" in out
    assert "\nproxy_set_header Host $host;\nVMDEPLOY_EOF\n" in out


def test_write_file_if_absent_rejects_delimiter_in_content():
    with pytest.raises(ValueError):
        WriteFileIfAbsent(path="/tmp/x", content="VMDEPLOY_EOF").render()


def test_ensure_symlink_skips_existing_link():
    out = EnsureSymlink(target="/a/app.conf", link="/b/app.conf").render()
    assert "if [ -L /b/app.conf ]; then" in out
    assert "$SUDO ln -s /a/app.conf /b/app.conf" in out


def test_run_variants():
    assert Run("docker ps").render() == "docker ps"
    best_effort = Run("docker compose pull", best_effort=True, label="image pull").render()
    assert best_effort.startswith("if ! { docker compose pull; }; then")
    assert "::notice:: image pull failed (ignored)" in best_effort
    checked = Run("nginx -t", error="nginx configuration test failed").render()
    assert "::error:: nginx configuration test failed" in checked
    assert "exit 1" in checked


def test_probe_render():
    assert Probe("health", "echo none").render() == 'echo "::value:: health=$(echo none)"'


def test_remote_result_parses_markers():
    result = RemoteResult(
        returncode=0,
        stdout="\n".join(
            [
                "[remote] docker already installed",
                "::changed:: package:nginx",
                "::notice:: added deploy to the docker group",
                "::value:: http_code=200",
                "::value:: health=none",
            ]
        ),
    )
    assert result.changes == ["package:nginx"]
    assert result.notices == ["added deploy to the docker group"]
    assert result.values == {"http_code": "200", "health": "none"}
    assert result.errors == []


def test_remote_result_detail_prefers_error_markers_then_stderr():
    assert RemoteResult(returncode=1, stdout="::error:: boom", stderr="noise").detail() == "boom"
    assert RemoteResult(returncode=1, stderr="a\nb\nc\nd").detail() == "b | c | d"


def test_remote_result_detail_adds_ssh_hint():
    detail = RemoteResult(returncode=255, stderr="deploy@host: Permission denied (publickey).").detail()
    assert "SSH authentication failed" in detail


def test_ssh_failure_hint_cases():
    assert "No route" in ssh_failure_hint("ssh: connect to host x port 22: No route to host")
    assert "timed out" in ssh_failure_hint("Connection timed out")
    assert "refused" in ssh_failure_hint("Connection refused")
    assert "resolution" in ssh_failure_hint("Could not resolve hostname nope")
    assert ssh_failure_hint("something else") == ""


def test_build_ssh_base_cmd_is_batch_mode_with_key():
    cmd = build_ssh_base_cmd(user="deploy", host="203.0.113.10", key_path="/keys/id", connect_timeout=10)
    assert cmd[:3] == ["ssh", "-i", "/keys/id"]
    assert "BatchMode=yes" in cmd
    assert "ConnectTimeout=10" in cmd
    assert cmd[-1] == "deploy@203.0.113.10"


def test_build_rsync_cmd_mirrors_with_delete():
    cmd = build_rsync_cmd(
        source_dir=Path("/work/web-app"),
        user="deploy",
        host="203.0.113.10",
        key_path="/keys/id",
        remote_dir="/home/deploy/web-app",
    )
    assert cmd[:3] == ["rsync", "-az", "--delete"]
    assert "/work/web-app/" in cmd
    assert cmd[-1] == "deploy@203.0.113.10:/home/deploy/web-app"
    assert "ssh -i /keys/id" in cmd[cmd.index("-e") + 1]


def test_ssh_executor_run_sends_script_on_stdin(monkeypatch):
    calls: list[dict] = []

    def fake_run(cmd, **kwargs):
        calls.append({"cmd": cmd, **kwargs})
        return subprocess.CompletedProcess(args=cmd, returncode=0, stdout="::changed:: file:/x\n", stderr="")

    monkeypatch.setattr(remote.subprocess, "run", fake_run)

    executor = SshExecutor(user="deploy", host="203.0.113.10", key_path="/keys/id")
    result = executor.run(RemoteCommandSpec(operations=(Run("echo hi"),), timeout=30))

    assert result.succeeded
    assert result.changes == ["file:/x"]
    assert calls[0]["cmd"][-1] == "bash -s"
    assert "echo hi" in calls[0]["input"]
    assert calls[0]["timeout"] == 30


def test_ssh_executor_converts_timeout_to_failed_result(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd=cmd, timeout=kwargs.get("timeout"))

    monkeypatch.setattr(remote.subprocess, "run", fake_run)

    executor = SshExecutor(user="deploy", host="203.0.113.10", key_path="/keys/id")
    result = executor.check_connection(timeout=10)
    assert result.returncode == remote.TIMEOUT_RETURNCODE
    assert "timed out" in result.stderr


def test_stream_text_replaces_invalid_utf8():
    assert remote.stream_text(b"app log \xff\xfe") == "app log ��"
    assert remote.stream_text(None) == ""
    assert remote.stream_text("plain") == "plain"


def test_ssh_executor_decodes_leniently(monkeypatch):
    calls: list[dict] = []

    def fake_run(cmd, **kwargs):
        calls.append(kwargs)
        return subprocess.CompletedProcess(args=cmd, returncode=0, stdout="ok\n", stderr="")

    monkeypatch.setattr(remote.subprocess, "run", fake_run)

    SshExecutor(user="deploy", host="203.0.113.10", key_path="/keys/id").run(RemoteCommandSpec(operations=()))
    assert calls[0]["encoding"] == "utf-8"
    assert calls[0]["errors"] == "replace"


def test_timeout_keeps_partial_bytes_output(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd=cmd, timeout=5, output=b"::notice:: slow \xff\n")

    monkeypatch.setattr(remote.subprocess, "run", fake_run)

    result = SshExecutor(user="deploy", host="203.0.113.10", key_path="/keys/id").run(
        RemoteCommandSpec(operations=(), timeout=5)
    )
    assert result.returncode == remote.TIMEOUT_RETURNCODE
    assert result.notices == ["slow �"]
