"""Deployment configuration.

The configuration is resolved once at startup into an immutable
:class:`DeploymentConfig` and threaded explicitly through every stage.
Resolution order for each value: CLI flag -> environment variable ->
dotenv file (``.env.deploy``) -> interactive prompt -> built-in default.
"""

from __future__ import annotations

import getpass
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from dotenv import dotenv_values


ENV_GIT_URL = "GIT_URL"
ENV_GIT_PAT = "GIT_PAT"
ENV_GIT_BRANCH = "GIT_BRANCH"
ENV_SSH_USER = "SSH_USER"
ENV_SERVER_IP = "SERVER_IP"
ENV_SSH_KEY_PATH = "SSH_KEY_PATH"
ENV_APP_PORT = "APP_PORT"
ENV_HOST_PORT = "HOST_PORT"
ENV_NON_INTERACTIVE = "NON_INTERACTIVE"
ENV_CLEANUP_MODE = "CLEANUP_MODE"
ENV_DEPLOY_WORKDIR = "DEPLOY_WORKDIR"
ENV_DEPLOY_PULL_BASE_IMAGES = "DEPLOY_PULL_BASE_IMAGES"

DEFAULT_BRANCH = "main"
DEFAULT_HOST_PORT = 80
DEFAULT_ENV_FILE = ".env.deploy"


@dataclass(frozen=True)
class DeploymentConfig:
    git_url: str
    credential: str = field(repr=False)
    ssh_user: str
    server_host: str
    ssh_key_path: str
    container_port: int | str
    branch: str = DEFAULT_BRANCH
    host_port: int | str = DEFAULT_HOST_PORT
    non_interactive: bool = False
    cleanup_mode: bool = False
    workdir: Path = field(default_factory=Path.cwd)
    pull_base_images: bool = False

    @property
    def ssh_target(self) -> str:
        return f"{self.ssh_user}@{self.server_host}"

    @property
    def container_port_number(self) -> int:
        return int(str(self.container_port).strip())

    @property
    def host_port_number(self) -> int:
        return int(str(self.host_port).strip())


def parse_boolish(value: str, *, default: bool = False) -> bool:
    normalized = str(value or "").strip().lower()
    if not normalized:
        return default
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def read_dotenv_key(*, dotenv_path: Path | None, key: str) -> str:
    if dotenv_path is None or not dotenv_path.exists():
        return ""
    raw = dotenv_values(dotenv_path)
    return str(raw.get(key) or "").strip()


# Prompt text for values collected interactively; the credential uses getpass.
_PROMPTS: dict[str, str] = {
    ENV_GIT_URL: "Enter Git repository URL: ",
    ENV_GIT_PAT: "Enter Personal Access Token (PAT): ",
    ENV_GIT_BRANCH: f"Enter branch name [default: {DEFAULT_BRANCH}]: ",
    ENV_SSH_USER: "Enter remote SSH username: ",
    ENV_SERVER_IP: "Enter remote server IP address: ",
    ENV_SSH_KEY_PATH: "Enter SSH private key path: ",
    ENV_APP_PORT: "Enter application internal port (container port): ",
}
_SECRET_KEYS = {ENV_GIT_PAT}


def load_config(
    *,
    cli_values: Mapping[str, str | None] | None = None,
    environ: Mapping[str, str] | None = None,
    env_file: Path | None = None,
    non_interactive: bool = False,
    cleanup_mode: bool = False,
    prompt: Callable[[str], str] = input,
    secret_prompt: Callable[[str], str] = getpass.getpass,
) -> DeploymentConfig:
    """Resolve a :class:`DeploymentConfig` from CLI values, env and dotenv.

    ``cli_values`` is keyed by the environment variable names above. Missing
    values are prompted for unless running non-interactively, in which case
    they stay empty and are reported by the config validator.
    """
    cli_values = dict(cli_values or {})
    environ = dict(environ or {})
    if env_file is None:
        default_env_file = Path.cwd() / DEFAULT_ENV_FILE
        env_file = default_env_file if default_env_file.exists() else None

    non_interactive = non_interactive or parse_boolish(environ.get(ENV_NON_INTERACTIVE, ""), default=False)
    cleanup_mode = cleanup_mode or parse_boolish(environ.get(ENV_CLEANUP_MODE, ""), default=False)

    def resolve(key: str) -> str:
        value = str(cli_values.get(key) or "").strip()
        if not value:
            value = str(environ.get(key) or "").strip()
        if not value:
            value = read_dotenv_key(dotenv_path=env_file, key=key)
        if not value and not non_interactive and key in _PROMPTS:
            ask = secret_prompt if key in _SECRET_KEYS else prompt
            value = str(ask(_PROMPTS[key]) or "").strip()
        return value

    git_url = resolve(ENV_GIT_URL)
    # Cleanup never clones, so it does not ask for the token.
    credential = "" if cleanup_mode and not _has_value(ENV_GIT_PAT, cli_values, environ, env_file) else resolve(ENV_GIT_PAT)
    branch = resolve(ENV_GIT_BRANCH) or DEFAULT_BRANCH
    ssh_user = resolve(ENV_SSH_USER)
    server_host = resolve(ENV_SERVER_IP)
    ssh_key_path = resolve(ENV_SSH_KEY_PATH)
    container_port = "" if cleanup_mode and not _has_value(ENV_APP_PORT, cli_values, environ, env_file) else resolve(ENV_APP_PORT)
    host_port = resolve(ENV_HOST_PORT) or str(DEFAULT_HOST_PORT)
    workdir_raw = resolve(ENV_DEPLOY_WORKDIR)
    pull_base_images = parse_boolish(resolve(ENV_DEPLOY_PULL_BASE_IMAGES), default=False)

    return DeploymentConfig(
        git_url=git_url,
        credential=credential,
        branch=branch,
        ssh_user=ssh_user,
        server_host=server_host,
        ssh_key_path=str(Path(ssh_key_path).expanduser()) if ssh_key_path else "",
        container_port=container_port,
        host_port=host_port,
        non_interactive=non_interactive,
        cleanup_mode=cleanup_mode,
        workdir=Path(workdir_raw).expanduser() if workdir_raw else Path.cwd(),
        pull_base_images=pull_base_images,
    )


def _has_value(
    key: str,
    cli_values: Mapping[str, str | None],
    environ: Mapping[str, str],
    env_file: Path | None,
) -> bool:
    return bool(
        str(cli_values.get(key) or "").strip()
        or str(environ.get(key) or "").strip()
        or read_dotenv_key(dotenv_path=env_file, key=key)
    )
