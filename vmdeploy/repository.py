"""Bring a local working copy of the application up to date.

The credential is embedded in the clone URL only for the duration of the git
command; the persisted ``origin`` remote always holds the plain URL and every
URL that reaches the log is masked first.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

import yaml

from .config import DeploymentConfig
from .logs import mask_text, mask_url
from .results import ExitCode, StageResult
from .validation import is_https_url


STAGE = "sync-repository"

COMPOSE_FILENAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")
DOCKERFILE_NAME = "Dockerfile"

MANIFEST_COMPOSE = "compose"
MANIFEST_DOCKERFILE = "dockerfile"

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepositoryHandle:
    name: str
    local_path: Path
    remote_path: str

    @property
    def app_name(self) -> str:
        """Name used for the container, image and nginx site."""
        return docker_safe_name(self.name)

    @classmethod
    def from_config(cls, config: DeploymentConfig) -> RepositoryHandle:
        name = repository_name(config.git_url)
        return cls(
            name=name,
            local_path=Path(config.workdir) / name,
            remote_path=f"{remote_home(config.ssh_user)}/{name}",
        )


@dataclass(frozen=True)
class Manifest:
    kind: str
    filename: str
    compose_version: str | None = None


def repository_name(git_url: str) -> str:
    tail = re.split(r"[/:]", str(git_url or "").strip().rstrip("/"))[-1]
    return tail[:-4] if tail.endswith(".git") else tail


def docker_safe_name(name: str) -> str:
    """Lowercase name usable as compose project, container, image and site name.

    Compose project names only allow ``[a-z0-9_-]``, so dots become dashes too;
    container names derived from the project then contain this exact string.
    """
    safe = re.sub(r"[^a-z0-9_-]+", "-", str(name or "").lower())
    safe = safe.lstrip("_-")
    return safe or "app"


def remote_home(ssh_user: str) -> str:
    return "/root" if ssh_user == "root" else f"/home/{ssh_user}"


def build_authenticated_url(*, git_url: str, credential: str) -> str:
    """Embed ``credential`` into the authority of an HTTPS URL.

    Raises ValueError for anything other than HTTPS; token auth does not
    apply to SSH remotes.
    """
    if not is_https_url(git_url):
        raise ValueError("Only HTTPS clone URLs are supported for PAT authentication (not SSH).")
    parts = urlsplit(git_url)
    host = parts.netloc.rsplit("@", 1)[-1]
    netloc = f"{quote(credential, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def build_git_clone_cmd(*, url: str, branch: str, dest: Path) -> list[str]:
    return ["git", "clone", "--branch", branch, "--single-branch", url, str(dest)]


def build_git_fetch_cmd(*, remote: str, branch: str) -> list[str]:
    return ["git", "fetch", remote, f"+refs/heads/{branch}:refs/remotes/origin/{branch}"]


def build_git_checkout_cmd(*, branch: str) -> list[str]:
    return ["git", "checkout", branch]


def build_git_pull_cmd(*, remote: str, branch: str) -> list[str]:
    return ["git", "pull", "--ff-only", remote, branch]


def build_git_set_origin_cmd(*, url: str) -> list[str]:
    return ["git", "remote", "set-url", "origin", url]


def _git(cmd: list[str], *, cwd: Path | None, secrets: tuple[str, ...]) -> tuple[bool, str]:
    env = dict(os.environ)
    # Never block on a credential prompt.
    env["GIT_TERMINAL_PROMPT"] = "0"
    result = subprocess.run(
        cmd,
        cwd=str(cwd) if cwd else None,
        capture_output=True,
        encoding="utf-8",
        errors="replace",
        check=False,
        env=env,
    )
    output = mask_text(f"{result.stdout or ''}\n{result.stderr or ''}".strip(), secrets)
    for line in output.splitlines():
        if line.strip():
            LOGGER.debug("[git] %s", line)
    tail = [line for line in output.splitlines() if line.strip()][-2:]
    return result.returncode == 0, " | ".join(tail)


def _compose_version(path: Path) -> str | None:
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        LOGGER.warning("Could not parse %s for a version key: %s", path.name, exc)
        return None
    if not isinstance(payload, dict) or payload.get("version") is None:
        return None
    return str(payload["version"]).strip()


def detect_manifest(path: Path) -> Manifest | None:
    for filename in COMPOSE_FILENAMES:
        candidate = path / filename
        if candidate.is_file():
            return Manifest(kind=MANIFEST_COMPOSE, filename=filename, compose_version=_compose_version(candidate))
    if (path / DOCKERFILE_NAME).is_file():
        return Manifest(kind=MANIFEST_DOCKERFILE, filename=DOCKERFILE_NAME)
    return None


def _log_manifest(manifest: Manifest) -> None:
    if manifest.kind == MANIFEST_DOCKERFILE:
        LOGGER.info("Found %s.", manifest.filename)
        return
    LOGGER.info("Found %s file.", manifest.filename)
    version = manifest.compose_version or ""
    if version.startswith("2"):
        LOGGER.info("Detected Docker Compose v2 syntax.")
    elif version.startswith("3"):
        LOGGER.info("Detected Docker Compose v3 syntax.")
    else:
        LOGGER.info("No version key found in %s (Compose Specification style).", manifest.filename)


def _update(config: DeploymentConfig, handle: RepositoryHandle, secrets: tuple[str, ...]) -> StageResult | None:
    LOGGER.info("Repository already exists at %s. Pulling latest changes...", handle.local_path)
    remote = "origin"
    if is_https_url(config.git_url) and config.credential:
        remote = build_authenticated_url(git_url=config.git_url, credential=config.credential)

    steps = [
        (build_git_fetch_cmd(remote=remote, branch=config.branch), f"Failed to fetch branch: {config.branch}"),
        (build_git_checkout_cmd(branch=config.branch), f"Failed to checkout branch: {config.branch}"),
        (build_git_pull_cmd(remote=remote, branch=config.branch), "Failed to pull latest changes."),
    ]
    for cmd, failure in steps:
        ok, detail = _git(cmd, cwd=handle.local_path, secrets=secrets)
        if not ok:
            message = f"{failure} {detail}".strip()
            return StageResult.fail(STAGE, message, ExitCode.DEPLOY_FAILURE)
    LOGGER.info("Repository updated successfully.")
    return None


def _clone(config: DeploymentConfig, handle: RepositoryHandle, secrets: tuple[str, ...]) -> StageResult | None:
    try:
        auth_url = build_authenticated_url(git_url=config.git_url, credential=config.credential)
    except ValueError as exc:
        return StageResult.fail(STAGE, str(exc), ExitCode.PARAM_ERROR)

    LOGGER.info("Cloning %s (branch %s)...", mask_url(auth_url), config.branch)
    Path(config.workdir).mkdir(parents=True, exist_ok=True)
    cmd = build_git_clone_cmd(url=auth_url, branch=config.branch, dest=handle.local_path)
    ok, detail = _git(cmd, cwd=Path(config.workdir), secrets=secrets)
    if not ok:
        return StageResult.fail(STAGE, f"Git clone failed. {detail}".strip(), ExitCode.DEPLOY_FAILURE)

    ok, detail = _git(build_git_set_origin_cmd(url=config.git_url), cwd=handle.local_path, secrets=secrets)
    if not ok:
        message = f"Failed to remove the credential from the origin URL. {detail}".strip()
        return StageResult.fail(STAGE, message, ExitCode.DEPLOY_FAILURE)
    LOGGER.info("Repository cloned successfully.")
    return None


def sync_repository(config: DeploymentConfig, handle: RepositoryHandle) -> StageResult:
    LOGGER.info("Preparing repository: %s", handle.name)
    secrets = (config.credential,) if config.credential else ()

    if (handle.local_path / ".git").is_dir():
        failure = _update(config, handle, secrets)
    else:
        failure = _clone(config, handle, secrets)
    if failure is not None:
        return failure

    manifest = detect_manifest(handle.local_path)
    if manifest is None:
        return StageResult.fail(
            STAGE,
            f"Neither {DOCKERFILE_NAME} nor a compose file ({', '.join(COMPOSE_FILENAMES)}) found in repository.",
            ExitCode.DEPLOY_FAILURE,
        )
    _log_manifest(manifest)
    return StageResult.ok(STAGE, f"Repository preparation complete ({manifest.filename}).")
