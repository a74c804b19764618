from __future__ import annotations

import logging
import shlex

from .config import DeploymentConfig
from .deployer import compose_project_name, image_name
from .proxy import NGINX_RELOAD_CMD, NGINX_TEST_CMD, ReverseProxySite
from .remote import RemoteCommandSpec, RemoteExecutor, Run
from .repository import COMPOSE_FILENAMES, RepositoryHandle
from .results import ExitCode, StageResult


STAGE = "cleanup"

LOGGER = logging.getLogger(__name__)


def cleanup_spec(handle: RepositoryHandle) -> RemoteCommandSpec:
    site = ReverseProxySite.for_app(handle.app_name, 0)
    remote_dir = shlex.quote(handle.remote_path)
    project = shlex.quote(compose_project_name(handle))
    compose_files = " ".join(COMPOSE_FILENAMES)
    compose_down = (
        f"if [ -d {remote_dir} ]; then cd {remote_dir}; "
        f"for f in {compose_files}; do "
        f'if [ -f "$f" ]; then $COMPOSE -p {project} -f "$f" down --remove-orphans; break; fi; '
        "done; fi"
    )
    # Every step is best-effort: a missing resource is not an error.
    return RemoteCommandSpec(
        description=f"clean up {handle.app_name}",
        uses_docker=True,
        operations=(
            Run(compose_down, announce="Stopping compose stack...", best_effort=True, label="compose down"),
            Run(
                'ids="$($DOCKER ps -aq)"; if [ -n "$ids" ]; then $DOCKER rm -f $ids >/dev/null; fi',
                announce="Stopping and removing containers...",
                best_effort=True,
                label="container removal",
            ),
            Run(
                f"$DOCKER image rm -f {shlex.quote(image_name(handle))} >/dev/null 2>&1 || true",
                announce="Removing application image...",
            ),
            Run("$DOCKER image prune -f", announce="Removing dangling images...", best_effort=True, label="image prune"),
            Run(
                f"$SUDO rm -f {shlex.quote(site.config_path)} {shlex.quote(site.enabled_path)}",
                announce="Removing nginx site configuration...",
                best_effort=True,
                label="nginx site removal",
            ),
            Run(
                f"{NGINX_TEST_CMD} && {NGINX_RELOAD_CMD}",
                announce="Validating and reloading nginx...",
                best_effort=True,
                label="nginx reload",
            ),
        ),
    )


def run_cleanup(config: DeploymentConfig, handle: RepositoryHandle, executor: RemoteExecutor) -> StageResult:
    """Tear down containers, images and the nginx site on the remote host.

    Always classified as cleanup-complete; individual failures are only
    reported as notices.
    """
    LOGGER.info("Running cleanup on remote server %s...", config.ssh_target)
    notices: list[str] = []
    try:
        result = executor.run(cleanup_spec(handle))
    except Exception as exc:
        # Cleanup always finishes as cleanup-complete.
        LOGGER.debug("Cleanup script raised", exc_info=True)
        notices.append(f"cleanup could not run: {exc}")
    else:
        notices.extend(result.notices)
        if not result.succeeded:
            notices.append(f"cleanup script exited with {result.returncode}: {result.detail()}")
    for notice in notices:
        LOGGER.warning("%s", notice)
    return StageResult(
        stage=STAGE,
        succeeded=True,
        message="Cleanup completed.",
        exit_code=ExitCode.CLEANUP_DONE,
        notices=tuple(notices),
    )
