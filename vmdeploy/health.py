from __future__ import annotations

import logging
import shlex

import requests

from .config import DeploymentConfig
from .deployer import container_listing_check
from .remote import Probe, RemoteCommandSpec, RemoteExecutor, Run
from .repository import RepositoryHandle
from .results import ExitCode, StageResult


STAGE = "validate-deployment"

ACCEPTED_STATUS_CODES = frozenset({200, 301, 302})
HTTP_TIMEOUT_SECONDS = 10
# Upper bound for the whole remote validation round trip.
REMOTE_VALIDATION_TIMEOUT_SECONDS = 60

LOGGER = logging.getLogger(__name__)


def is_accepted_status(status_code: int | None) -> bool:
    return status_code in ACCEPTED_STATUS_CODES


def parse_status_code(raw: str | None) -> int | None:
    text = str(raw or "").strip()
    if not text.isdigit():
        return None
    code = int(text)
    # curl reports 000 when no response arrived.
    return code or None


def http_probe(url: str, *, timeout: int = HTTP_TIMEOUT_SECONDS) -> int | None:
    """Return the HTTP status for ``url``, or None when no response arrived."""
    try:
        response = requests.get(url, timeout=timeout, allow_redirects=False)
    except requests.RequestException as exc:
        LOGGER.warning("HTTP probe of %s failed: %s", url, exc)
        return None
    return int(response.status_code)


def validation_spec(config: DeploymentConfig, handle: RepositoryHandle) -> RemoteCommandSpec:
    name = shlex.quote(handle.app_name)
    health_format = "'{{if .State.Health}}{{.State.Health.Status}}{{else}}none{{end}}'"
    return RemoteCommandSpec(
        description=f"validate {handle.app_name}",
        timeout=REMOTE_VALIDATION_TIMEOUT_SECONDS,
        uses_docker=True,
        operations=(
            Run(
                "systemctl is-active --quiet docker",
                announce="Checking Docker service status...",
                error="Docker service is not active!",
            ),
            container_listing_check(handle, error="Container not running."),
            Probe(
                "health",
                f"$DOCKER inspect --format {health_format} "
                f"$($DOCKER ps -qf name={name} | head -n 1) 2>/dev/null || echo none",
            ),
            Probe(
                "http_code",
                f"curl -s -o /dev/null -w '%{{http_code}}' --max-time {HTTP_TIMEOUT_SECONDS} "
                f"http://localhost:{config.host_port_number}/ || true",
            ),
        ),
    )


def validate_deployment(config: DeploymentConfig, handle: RepositoryHandle, executor: RemoteExecutor) -> StageResult:
    LOGGER.info("Validating deployment on remote server...")
    result = executor.run(validation_spec(config, handle))
    if not result.succeeded:
        message = f"Remote validation failed. {result.detail()}".strip()
        return StageResult.fail(STAGE, message, ExitCode.VALIDATION_FAILURE)

    values = result.values
    health = values.get("health") or "none"
    if health == "none":
        LOGGER.info("Container defines no health check.")
    else:
        LOGGER.info("Container health status: %s", health)

    remote_code = parse_status_code(values.get("http_code"))
    LOGGER.info("Remote HTTP response code on localhost:%s: %s", config.host_port_number, remote_code or "000")
    if not is_accepted_status(remote_code):
        return StageResult.fail(
            STAGE,
            f"Unexpected response from app on localhost:{config.host_port_number} (HTTP {remote_code or '000'}).",
            ExitCode.VALIDATION_FAILURE,
        )

    LOGGER.info("Performing external access test from local system...")
    url = f"http://{config.server_host}/"
    local_code = http_probe(url)
    if not is_accepted_status(local_code):
        return StageResult.fail(
            STAGE,
            f"Application is not reachable from local system at {url} (HTTP {local_code or '000'}).",
            ExitCode.VALIDATION_FAILURE,
        )

    LOGGER.info("Application is reachable externally (HTTP %s)", local_code)
    return StageResult.ok(STAGE, f"Deployment validated (remote HTTP {remote_code}, external HTTP {local_code}).")
