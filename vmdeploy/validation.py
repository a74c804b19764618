from __future__ import annotations

import logging
import re
from pathlib import Path

from .config import DeploymentConfig
from .results import ExitCode, StageResult


STAGE = "validate-config"

_HTTPS_URL_PATTERN = re.compile(r"^https://[^\s/@]+(@[^\s/]+)?/\S+$")
_SSH_URL_PATTERN = re.compile(r"^(git@[^\s:]+:\S+|ssh://\S+)$")
_PORT_PATTERN = re.compile(r"^[0-9]+$")

LOGGER = logging.getLogger(__name__)


def is_https_url(url: str) -> bool:
    return bool(_HTTPS_URL_PATTERN.match(str(url or "").strip()))


def is_ssh_url(url: str) -> bool:
    return bool(_SSH_URL_PATTERN.match(str(url or "").strip()))


def _port_error(label: str, value: int | str) -> str:
    raw = str(value if value is not None else "").strip()
    if not _PORT_PATTERN.match(raw) or not 1 <= int(raw) <= 65535:
        return f"Invalid {label}: {raw or '<empty>'}. Must be between 1-65535."
    return ""


def _first_violation(config: DeploymentConfig) -> str:
    git_url = str(config.git_url or "").strip()
    if not git_url:
        return "Git repository URL is required."
    if not (is_https_url(git_url) or is_ssh_url(git_url)):
        return "Invalid Git URL format (expected https://... or git@host:owner/repo)."
    if not config.cleanup_mode and not str(config.credential or "").strip():
        return "Personal Access Token is required."
    if not str(config.ssh_user or "").strip():
        return "SSH username is required."
    if not str(config.server_host or "").strip():
        return "Server IP address is required."
    key_path = str(config.ssh_key_path or "").strip()
    if not key_path or not Path(key_path).is_file():
        return f"SSH key path not found: {key_path or '<empty>'}"
    if not config.cleanup_mode:
        problem = _port_error("application port", config.container_port)
        if problem:
            return problem
    return _port_error("host port", config.host_port)


def validate_config(config: DeploymentConfig) -> StageResult:
    """Check the configuration before anything touches the network.

    Stops at the first violated constraint. Only reads the local filesystem
    (for the SSH key path).
    """
    problem = _first_violation(config)
    if problem:
        return StageResult.fail(STAGE, problem, ExitCode.PARAM_ERROR)

    notices: list[str] = []
    if not config.cleanup_mode and config.host_port_number == 80:
        # nginx listens on 80 as well, so the published port collides with it.
        notice = "HOST_PORT is 80, the same port the reverse proxy listens on; set HOST_PORT to avoid a bind conflict."
        LOGGER.warning(notice)
        notices.append(notice)
    return StageResult.ok(STAGE, "Input validation successful.", notices=notices)
