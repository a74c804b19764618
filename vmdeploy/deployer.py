from __future__ import annotations

import logging
import shlex

from .config import DeploymentConfig
from .remote import RemoteCommandSpec, RemoteExecutor, Run
from .repository import MANIFEST_COMPOSE, Manifest, RepositoryHandle, detect_manifest
from .results import ExitCode, StageResult


STAGE = "deploy-application"
IMAGE_PULL_LABEL = "image pull"
LOG_TAIL_LINES = 10

LOGGER = logging.getLogger(__name__)


def compose_project_name(handle: RepositoryHandle) -> str:
    # Same string the container listing check greps for.
    return handle.app_name


def image_name(handle: RepositoryHandle) -> str:
    return f"{handle.app_name}:latest"


def container_listing_check(handle: RepositoryHandle, *, error: str) -> Run:
    listing = "$DOCKER ps --format '{{.Names}}\t{{.Status}}\t{{.Ports}}'"
    return Run(
        f"{listing} | grep -iF -- {shlex.quote(handle.app_name)}",
        announce="Checking container status...",
        error=error,
    )


def _compose_operations(config: DeploymentConfig, handle: RepositoryHandle, manifest: Manifest) -> list[Run]:
    compose = f"$COMPOSE -p {shlex.quote(compose_project_name(handle))} -f {shlex.quote(manifest.filename)}"
    operations = [
        Run(
            f"{compose} pull",
            announce=f"{manifest.filename} found, deploying with Docker Compose...",
            best_effort=True,
            label=IMAGE_PULL_LABEL,
        ),
    ]
    if config.pull_base_images:
        operations.append(Run(f"{compose} build --pull", error="docker compose build failed"))
    operations.append(Run(f"{compose} up -d --build --remove-orphans", error="docker compose up failed"))
    operations.append(container_listing_check(handle, error="Container not running as expected."))
    operations.append(
        Run(
            f"{compose} logs --tail {LOG_TAIL_LINES} 2>&1",
            announce="Displaying recent logs...",
            best_effort=True,
            label="log tail",
        )
    )
    return operations


def _dockerfile_operations(config: DeploymentConfig, handle: RepositoryHandle) -> list[Run]:
    image = shlex.quote(image_name(handle))
    name = shlex.quote(handle.app_name)
    pull = " --pull" if config.pull_base_images else ""
    return [
        Run(
            f"$DOCKER build{pull} -t {image} .",
            announce="No compose file found. Using Dockerfile...",
            error="docker build failed",
        ),
        Run(f"$DOCKER rm -f {name} >/dev/null 2>&1 || true"),
        Run(
            f"$DOCKER run -d --name {name} -p {config.host_port_number}:{config.container_port_number} "
            f"--restart unless-stopped {image}",
            error="docker run failed",
        ),
        container_listing_check(handle, error="Container not running as expected."),
        Run(
            f"$DOCKER logs --tail {LOG_TAIL_LINES} {name} 2>&1",
            announce="Displaying recent logs...",
            best_effort=True,
            label="log tail",
        ),
    ]


def deploy_spec(config: DeploymentConfig, handle: RepositoryHandle, manifest: Manifest) -> RemoteCommandSpec:
    if manifest.kind == MANIFEST_COMPOSE:
        operations = _compose_operations(config, handle, manifest)
    else:
        operations = _dockerfile_operations(config, handle)
    return RemoteCommandSpec(
        description=f"deploy {handle.app_name}",
        operations=tuple(operations),
        uses_docker=True,
        workdir=handle.remote_path,
    )


def deploy_application(config: DeploymentConfig, handle: RepositoryHandle, executor: RemoteExecutor) -> StageResult:
    manifest = detect_manifest(handle.local_path)
    if manifest is None:
        return StageResult.fail(STAGE, "Nothing to deploy: no compose file or Dockerfile.", ExitCode.DEPLOY_FAILURE)

    LOGGER.info("Transferring project files to %s:%s...", config.ssh_target, handle.remote_path)
    transfer = executor.mirror(source_dir=handle.local_path, remote_dir=handle.remote_path)
    if not transfer.succeeded:
        message = f"File transfer failed via rsync. {transfer.detail()}".strip()
        return StageResult.fail(STAGE, message, ExitCode.DEPLOY_FAILURE)
    LOGGER.info("Project files transferred successfully.")

    LOGGER.info("Deploying Dockerized application on remote server...")
    result = executor.run(deploy_spec(config, handle, manifest))
    if not result.succeeded:
        message = f"Deployment failed. {result.detail()}".strip()
        return StageResult.fail(STAGE, message, ExitCode.DEPLOY_FAILURE)

    notices = result.notices
    for notice in notices:
        if notice.startswith(IMAGE_PULL_LABEL):
            LOGGER.warning("Image pull failed; images were built from the local cache where needed.")
        else:
            LOGGER.warning("%s", notice)
    return StageResult.ok(STAGE, "Application deployed successfully on remote server.", notices=notices)
