"""Structured remote commands and the SSH/rsync channel that runs them.

A :class:`RemoteCommandSpec` is an ordered tuple of typed operations. Each
operation renders to a small bash fragment; idempotent operations check the
current state first, apply only the delta, and report what they changed with
a ``::changed::`` marker line so callers can tell a no-op from a change.

Security note: this module shells out to ``ssh`` and ``rsync``.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union


CHANGED_MARKER = "::changed::"
NOTICE_MARKER = "::notice::"
VALUE_MARKER = "::value::"
ERROR_MARKER = "::error::"

HEREDOC_DELIMITER = "VMDEPLOY_EOF"

# Exit status used when a remote round trip exceeds its timeout.
TIMEOUT_RETURNCODE = 124
# Exit status ssh itself reports for connection/authentication failures.
SSH_ERROR_RETURNCODE = 255


LOGGER = logging.getLogger(__name__)


def _indent(text: str, prefix: str = "  ") -> str:
    return "\n".join(f"{prefix}{line}" if line else line for line in text.splitlines())


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DetectPackageManager:
    """Pick the first available package manager; fail when none is present."""

    candidates: tuple[str, ...] = ("apt-get", "dnf", "yum")

    def render(self) -> str:
        names = " ".join(self.candidates)
        return "\n".join(
            [
                'PKG_MANAGER=""',
                f"for candidate in {names}; do",
                '  if command -v "$candidate" >/dev/null 2>&1; then PKG_MANAGER="$candidate"; break; fi',
                "done",
                'if [ -z "$PKG_MANAGER" ]; then',
                f'  echo "{ERROR_MARKER} no supported package manager found ({names})"',
                "  exit 3",
                "fi",
                f'echo "{VALUE_MARKER} package_manager=$PKG_MANAGER"',
                'PKG_REFRESHED=""',
                "pkg_refresh() {",
                '  if [ -z "$PKG_REFRESHED" ]; then',
                '    if [ "$PKG_MANAGER" = "apt-get" ]; then',
                "      $SUDO apt-get update -y >/dev/null",
                "    else",
                '      $SUDO "$PKG_MANAGER" makecache -y >/dev/null',
                "    fi",
                "    PKG_REFRESHED=1",
                "  fi",
                "}",
            ]
        )


@dataclass(frozen=True)
class EnsurePackage:
    """Install ``name`` unless ``check`` already succeeds.

    ``apt_install`` runs on apt-get hosts, ``rpm_install`` on dnf/yum hosts
    (where ``$PKG_MANAGER`` names the tool). The package index is refreshed
    at most once per script and only when something is installed.
    """

    name: str
    check: str
    apt_install: str
    rpm_install: str

    def render(self) -> str:
        return "\n".join(
            [
                f"if {self.check}; then",
                f'  echo "[remote] {self.name} already installed"',
                "else",
                f'  echo "[remote] installing {self.name}"',
                "  pkg_refresh",
                '  if [ "$PKG_MANAGER" = "apt-get" ]; then',
                _indent(self.apt_install, "    "),
                "  else",
                _indent(self.rpm_install, "    "),
                "  fi",
                f'  echo "{CHANGED_MARKER} package:{self.name}"',
                "fi",
            ]
        )


@dataclass(frozen=True)
class EnsureServiceRunning:
    service: str

    def render(self) -> str:
        svc = shlex.quote(self.service)
        return "\n".join(
            [
                f"if systemctl is-enabled --quiet {svc} 2>/dev/null && systemctl is-active --quiet {svc}; then",
                f'  echo "[remote] {self.service} already enabled and running"',
                "else",
                f"  $SUDO systemctl enable {svc} >/dev/null",
                f"  $SUDO systemctl start {svc} >/dev/null",
                f'  echo "{CHANGED_MARKER} service:{self.service}"',
                "fi",
            ]
        )


@dataclass(frozen=True)
class EnsureGroupMembership:
    """Add the remote user to ``group``; root does not need it."""

    group: str

    def render(self) -> str:
        group = shlex.quote(self.group)
        return "\n".join(
            [
                'if [ "$(id -u)" -eq 0 ]; then',
                f'  echo "[remote] running as root; {self.group} group membership not needed"',
                f"elif id -nG \"$REMOTE_USER\" | tr ' ' '\\n' | grep -x {group} >/dev/null; then",
                f'  echo "[remote] $REMOTE_USER already in {self.group} group"',
                "else",
                f'  $SUDO usermod -aG {group} "$REMOTE_USER"',
                f'  echo "{NOTICE_MARKER} added $REMOTE_USER to the {self.group} group; '
                'a new login session is required for it to take effect"',
                f'  echo "{CHANGED_MARKER} group:{self.group}"',
                "fi",
            ]
        )


@dataclass(frozen=True)
class WriteFileIfAbsent:
    path: str
    content: str

    def render(self) -> str:
        if HEREDOC_DELIMITER in self.content:
            raise ValueError(f"file content for {self.path} must not contain {HEREDOC_DELIMITER}")
        path = shlex.quote(self.path)
        body = self.content if self.content.endswith("\n") else f"{self.content}\n"
        return "\n".join(
            [
                f"if [ -f {path} ]; then",
                f'  echo "[remote] {self.path} already exists; leaving it unchanged"',
                "else",
                f"  $SUDO tee {path} >/dev/null <<'{HEREDOC_DELIMITER}'",
                # Heredoc body and terminator must not be indented.
                f"{body}{HEREDOC_DELIMITER}",
                f'  echo "{CHANGED_MARKER} file:{self.path}"',
                "fi",
            ]
        )


@dataclass(frozen=True)
class EnsureSymlink:
    target: str
    link: str

    def render(self) -> str:
        link = shlex.quote(self.link)
        return "\n".join(
            [
                f"if [ -L {link} ]; then",
                f'  echo "[remote] {self.link} already linked"',
                "else",
                f"  $SUDO ln -s {shlex.quote(self.target)} {link}",
                f'  echo "{CHANGED_MARKER} symlink:{self.link}"',
                "fi",
            ]
        )


@dataclass(frozen=True)
class Run:
    """Run a command and check it.

    ``best_effort`` failures are reported as notices and do not stop the
    script. ``error`` replaces the shell's own failure output with a
    readable message before exiting.
    """

    command: str
    announce: str = ""
    best_effort: bool = False
    label: str = ""
    error: str = ""

    def render(self) -> str:
        lines: list[str] = []
        if self.announce:
            lines.append(f"echo {shlex.quote(f'[remote] {self.announce}')}")
        if self.best_effort:
            label = self.label or self.command
            notice = f"{NOTICE_MARKER} {label} failed (ignored)"
            lines.append(f"if ! {{ {self.command}; }}; then echo {shlex.quote(notice)}; fi")
        elif self.error:
            lines.append(f"if ! {{ {self.command}; }}; then")
            lines.append(f"  echo {shlex.quote(f'{ERROR_MARKER} {self.error}')}")
            lines.append("  exit 1")
            lines.append("fi")
        else:
            lines.append(self.command)
        return "\n".join(lines)


@dataclass(frozen=True)
class Probe:
    """Capture the output of ``command`` as ``key`` without failing the script."""

    key: str
    command: str

    def render(self) -> str:
        return f'echo "{VALUE_MARKER} {self.key}=$({self.command})"'


Operation = Union[
    DetectPackageManager,
    EnsurePackage,
    EnsureServiceRunning,
    EnsureGroupMembership,
    WriteFileIfAbsent,
    EnsureSymlink,
    Run,
    Probe,
]


@dataclass(frozen=True)
class RemoteCommandSpec:
    operations: tuple[Operation, ...]
    description: str = ""
    fail_fast: bool = True
    timeout: float | None = None
    uses_docker: bool = False
    workdir: str | None = None

    def render(self) -> str:
        lines: list[str] = []
        if self.fail_fast:
            lines.append("set -euo pipefail")
        lines.append('if [ "$(id -u)" -eq 0 ]; then SUDO=""; else SUDO="sudo"; fi')
        lines.append('REMOTE_USER="${USER:-$(id -un)}"')
        if self.uses_docker:
            # Group membership granted during bootstrap only applies to new sessions.
            lines.append('if docker info >/dev/null 2>&1; then DOCKER="docker"; else DOCKER="$SUDO docker"; fi')
            lines.append(
                'if $DOCKER compose version >/dev/null 2>&1; then COMPOSE="$DOCKER compose"; '
                'else COMPOSE="$SUDO docker-compose"; fi'
            )
        if self.workdir:
            lines.append(f"cd {shlex.quote(self.workdir)}")
        for operation in self.operations:
            lines.append(operation.render())
        return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RemoteResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    command: tuple[str, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0

    def _marked(self, marker: str) -> list[str]:
        out: list[str] = []
        for line in str(self.stdout or "").splitlines():
            text = line.strip()
            if text.startswith(marker):
                out.append(text[len(marker):].strip())
        return out

    @property
    def changes(self) -> list[str]:
        return self._marked(CHANGED_MARKER)

    @property
    def notices(self) -> list[str]:
        return self._marked(NOTICE_MARKER)

    @property
    def errors(self) -> list[str]:
        return self._marked(ERROR_MARKER)

    @property
    def values(self) -> dict[str, str]:
        out: dict[str, str] = {}
        for item in self._marked(VALUE_MARKER):
            key, _, value = item.partition("=")
            out[key.strip()] = value.strip()
        return out

    def detail(self) -> str:
        """Best single-line explanation of a failure."""
        if self.errors:
            return "; ".join(self.errors)
        text = str(self.stderr or "").strip() or str(self.stdout or "").strip()
        tail = [line for line in text.splitlines() if line.strip()][-3:]
        message = " | ".join(tail)
        if self.returncode == SSH_ERROR_RETURNCODE:
            hint = ssh_failure_hint(text)
            if hint:
                message = f"{message} {hint}".strip()
        return message


def stream_text(value: bytes | str | None) -> str:
    """Decode captured process output, replacing undecodable bytes."""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value or "")


def ssh_failure_hint(error_text: str) -> str:
    lowered = error_text.lower()
    if "no route to host" in lowered:
        return "No route to host. Check network reachability and SERVER_IP."
    if "connection timed out" in lowered or "operation timed out" in lowered:
        return "SSH timed out. Verify the server is online and port 22 is reachable."
    if "connection refused" in lowered:
        return "SSH connection refused. Confirm the SSH daemon is running and port 22 is open."
    if "permission denied" in lowered:
        return "SSH authentication failed. Verify SSH_KEY_PATH and SSH_USER."
    if "could not resolve hostname" in lowered:
        return "Host resolution failed. Check SERVER_IP for typos/DNS issues."
    return ""


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def build_ssh_base_cmd(*, user: str, host: str, key_path: str, connect_timeout: int | None = None) -> list[str]:
    cmd = [
        "ssh",
        "-i", key_path,
        "-o", "BatchMode=yes",
        "-o", "StrictHostKeyChecking=accept-new",
    ]
    if connect_timeout is not None:
        cmd.extend(["-o", f"ConnectTimeout={int(connect_timeout)}"])
    cmd.append(f"{user}@{host}")
    return cmd


def build_rsync_cmd(*, source_dir: Path, user: str, host: str, key_path: str, remote_dir: str) -> list[str]:
    ssh_transport = shlex.join(
        ["ssh", "-i", key_path, "-o", "BatchMode=yes", "-o", "StrictHostKeyChecking=accept-new"]
    )
    # Trailing slash on the source copies its contents, not the directory itself.
    src = f"{str(source_dir).rstrip('/')}/"
    dest = f"{user}@{host}:{remote_dir}"
    return ["rsync", "-az", "--delete", "-e", ssh_transport, src, dest]


class RemoteExecutor(ABC):
    """The single channel through which stages touch the remote host."""

    @abstractmethod
    def run(self, spec: RemoteCommandSpec) -> RemoteResult:
        """Execute ``spec`` and return once the remote side has finished."""

    @abstractmethod
    def check_connection(self, *, timeout: int) -> RemoteResult:
        """Run a trivial non-interactive command to prove key-based access."""

    @abstractmethod
    def mirror(self, *, source_dir: Path, remote_dir: str) -> RemoteResult:
        """Mirror a local tree to ``remote_dir``, deleting remote extras."""


class SshExecutor(RemoteExecutor):
    def __init__(self, *, user: str, host: str, key_path: str):
        self._user = user
        self._host = host
        self._key_path = key_path

    def _execute(self, cmd: list[str], *, input_text: str | None, timeout: float | None) -> RemoteResult:
        try:
            completed = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                encoding="utf-8",
                # Container logs and pull progress are not guaranteed to be UTF-8.
                errors="replace",
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            result = RemoteResult(
                returncode=TIMEOUT_RETURNCODE,
                stdout=stream_text(exc.stdout),
                stderr=f"timed out after {timeout}s",
                command=tuple(cmd),
            )
        else:
            result = RemoteResult(
                returncode=completed.returncode,
                stdout=stream_text(completed.stdout),
                stderr=stream_text(completed.stderr),
                command=tuple(cmd),
            )
        _log_output(result)
        return result

    def run(self, spec: RemoteCommandSpec) -> RemoteResult:
        if spec.description:
            LOGGER.debug("Running remote script: %s", spec.description)
        cmd = build_ssh_base_cmd(user=self._user, host=self._host, key_path=self._key_path)
        cmd.append("bash -s")
        return self._execute(cmd, input_text=spec.render(), timeout=spec.timeout)

    def check_connection(self, *, timeout: int) -> RemoteResult:
        cmd = build_ssh_base_cmd(
            user=self._user,
            host=self._host,
            key_path=self._key_path,
            connect_timeout=timeout,
        )
        cmd.append("echo ok")
        # Leave headroom over ConnectTimeout for the command itself.
        return self._execute(cmd, input_text=None, timeout=timeout + 5)

    def mirror(self, *, source_dir: Path, remote_dir: str) -> RemoteResult:
        cmd = build_rsync_cmd(
            source_dir=source_dir,
            user=self._user,
            host=self._host,
            key_path=self._key_path,
            remote_dir=remote_dir,
        )
        return self._execute(cmd, input_text=None, timeout=None)


def _log_output(result: RemoteResult) -> None:
    for line in str(result.stdout or "").splitlines():
        if line.strip():
            LOGGER.info("%s", line)
    for line in str(result.stderr or "").splitlines():
        if line.strip():
            LOGGER.debug("[stderr] %s", line)
    if not result.succeeded:
        LOGGER.debug("Command exited with %s: %s", result.returncode, shlex.join(result.command))
