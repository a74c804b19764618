from __future__ import annotations

import logging
import shutil
import subprocess

from .config import DeploymentConfig
from .remote import RemoteExecutor
from .results import ExitCode, StageResult


STAGE = "check-connectivity"
SSH_CONNECT_TIMEOUT_SECONDS = 10
PING_TIMEOUT_SECONDS = 2

LOGGER = logging.getLogger(__name__)


def build_ping_cmd(*, host: str) -> list[str]:
    return ["ping", "-c", "1", "-W", str(PING_TIMEOUT_SECONDS), host]


def ping_host(host: str) -> bool | None:
    """Return ping reachability, or None when ``ping`` is unavailable."""
    if shutil.which("ping") is None:
        return None
    try:
        result = subprocess.run(
            build_ping_cmd(host=host),
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            timeout=PING_TIMEOUT_SECONDS + 3,
            check=False,
        )
    except subprocess.TimeoutExpired:
        return False
    return result.returncode == 0


def check_connectivity(config: DeploymentConfig, executor: RemoteExecutor) -> StageResult:
    LOGGER.info("Checking SSH connectivity to remote server: %s", config.ssh_target)

    # Many hosts drop ICMP, so ping only ever warns.
    reachable = ping_host(config.server_host)
    if reachable is None:
        LOGGER.info("Ping command not available, skipping ICMP test.")
    elif reachable:
        LOGGER.info("Ping successful to %s", config.server_host)
    else:
        LOGGER.warning("Ping to %s failed (host may block ICMP). Continuing to SSH test...", config.server_host)

    result = executor.check_connection(timeout=SSH_CONNECT_TIMEOUT_SECONDS)
    if not result.succeeded:
        message = "SSH connection failed. Check credentials, key permissions, or server availability."
        detail = result.detail()
        if detail:
            message = f"{message} {detail}"
        return StageResult.fail(STAGE, message, ExitCode.SSH_FAILURE)

    LOGGER.info("SSH connection successful to %s", config.ssh_target)
    return StageResult.ok(STAGE, "Remote server connectivity verified.")
