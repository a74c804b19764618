"""Provision a remote host and deploy a containerized app behind nginx.

Security note: the run shells out to ``git``, ``ssh`` and ``rsync``. The
personal access token is only held in memory and is masked in the run log.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from types import FrameType

from .config import (
    ENV_DEPLOY_PULL_BASE_IMAGES,
    ENV_DEPLOY_WORKDIR,
    ENV_HOST_PORT,
    load_config,
)
from .logs import LOG_PREFIX, configure_logging, default_log_path
from .pipeline import Orchestrator, PipelineState
from .results import ExitCode


LOGGER = logging.getLogger("vmdeploy")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vmdeploy",
        description="Deploy a Dockerized application to a remote host behind an nginx reverse proxy",
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Tear down containers, images and the nginx site on the remote host instead of deploying",
    )
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        help="Read configuration from environment variables (and .env.deploy) instead of prompting",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Dotenv file consulted after environment variables (default: ./.env.deploy when present)",
    )
    parser.add_argument(
        "--workdir",
        default=None,
        help="Local directory that holds the working copy. Resolution: CLI -> DEPLOY_WORKDIR -> current directory",
    )
    parser.add_argument(
        "--host-port",
        default=None,
        help="Host port published for the container. Resolution: CLI -> HOST_PORT -> 80",
    )
    parser.add_argument(
        "--pull-base-images",
        action="store_true",
        help="Refresh base images when building instead of reusing the build cache",
    )
    parser.add_argument(
        "--log-dir",
        default=None,
        help="Directory for the deploy_<timestamp>.log run log (default: current directory)",
    )
    return parser


def _install_signal_handlers(log_path: Path) -> None:
    def _on_signal(signum: int, frame: FrameType | None) -> None:
        # No remote rollback: just point at the log and stop.
        LOGGER.error("%s Interrupted by signal %s. Please check the log file: %s", LOG_PREFIX, signum, log_path)
        raise SystemExit(128 + signum)

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    cli_values = {
        ENV_DEPLOY_WORKDIR: args.workdir,
        ENV_HOST_PORT: args.host_port,
        ENV_DEPLOY_PULL_BASE_IMAGES: "true" if args.pull_base_images else None,
    }
    config = load_config(
        cli_values=cli_values,
        environ=os.environ,
        env_file=Path(args.env_file) if args.env_file else None,
        non_interactive=bool(args.non_interactive),
        cleanup_mode=bool(args.cleanup),
    )

    log_path = configure_logging(
        log_path=default_log_path(Path(args.log_dir) if args.log_dir else None),
        secrets=[config.credential],
    )
    _install_signal_handlers(log_path)
    LOGGER.info("%s Starting deployment script...", LOG_PREFIX)
    if config.cleanup_mode:
        LOGGER.info("%s Cleanup mode activated.", LOG_PREFIX)

    outcome = Orchestrator(config).run()

    if outcome.state is PipelineState.ABORTED:
        failed = outcome.failed_result
        reason = f"{failed.stage}: {failed.message}" if failed else "unknown failure"
        LOGGER.error("%s Deployment aborted (%s)", LOG_PREFIX, reason)
        LOGGER.error("%s Please check the log file: %s", LOG_PREFIX, log_path)
    elif outcome.state is PipelineState.CLEANED_UP:
        LOGGER.info("%s Cleanup completed. Log file: %s", LOG_PREFIX, log_path)
    else:
        LOGGER.info("%s Done. Log file: %s", LOG_PREFIX, log_path)

    if outcome.exit_code != ExitCode.SUCCESS:
        raise SystemExit(outcome.exit_code)


if __name__ == "__main__":
    main(sys.argv[1:])
