"""Pipeline orchestrator.

Runs the stages strictly in order and stops at the first failed
:class:`StageResult`; the run then ends in ``ABORTED`` with that stage's exit
classification. Cleanup mode skips the deployment stages entirely. Nothing
is retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .bootstrap import bootstrap_remote
from .cleanup import run_cleanup
from .config import DeploymentConfig
from .connectivity import check_connectivity
from .deployer import deploy_application
from .health import validate_deployment
from .logs import StepLogger
from .proxy import configure_proxy
from .remote import RemoteExecutor, SshExecutor
from .repository import RepositoryHandle, sync_repository
from .results import ExitCode, StageResult
from .validation import validate_config


LOGGER = logging.getLogger(__name__)


class PipelineState(str, Enum):
    VALIDATING = "Validating"
    SYNCING = "Syncing"
    CONNECTING = "Connecting"
    BOOTSTRAPPING = "Bootstrapping"
    DEPLOYING = "Deploying"
    CONFIGURING_PROXY = "ConfiguringProxy"
    VALIDATING_DEPLOYMENT = "ValidatingDeployment"
    SUCCEEDED = "Succeeded"
    ABORTED = "Aborted"
    CLEANED_UP = "CleanedUp"


@dataclass(frozen=True)
class PipelineOutcome:
    state: PipelineState
    exit_code: int
    results: tuple[StageResult, ...]
    history: tuple[PipelineState, ...]

    @property
    def failed_result(self) -> StageResult | None:
        for result in self.results:
            if not result.succeeded:
                return result
        return None


StageCall = Callable[[], StageResult]


class Orchestrator:
    def __init__(
        self,
        config: DeploymentConfig,
        *,
        executor: RemoteExecutor | None = None,
        steps: StepLogger | None = None,
    ):
        self._config = config
        self._executor = executor or SshExecutor(
            user=config.ssh_user,
            host=config.server_host,
            key_path=config.ssh_key_path,
        )
        self._steps = steps or StepLogger()
        self._history: list[PipelineState] = []
        self._results: list[StageResult] = []

    def _enter(self, state: PipelineState) -> None:
        self._history.append(state)
        LOGGER.debug("Pipeline state -> %s", state.value)

    def _run_stage(self, state: PipelineState, title: str, call: StageCall) -> StageResult:
        self._enter(state)
        self._steps.step(title)
        try:
            result = call()
        except Exception as exc:
            LOGGER.exception("Unexpected error during %s", state.value)
            result = StageResult.fail(state.value, f"Unexpected error: {exc}", ExitCode.UNEXPECTED)
        self._results.append(result)
        if result.succeeded:
            LOGGER.info("%s", result.message)
        else:
            LOGGER.error("%s failed: %s", state.value, result.message)
        return result

    def _finish(self, state: PipelineState, exit_code: int) -> PipelineOutcome:
        self._enter(state)
        return PipelineOutcome(
            state=state,
            exit_code=int(exit_code),
            results=tuple(self._results),
            history=tuple(self._history),
        )

    def run(self) -> PipelineOutcome:
        config = self._config
        validation = self._run_stage(PipelineState.VALIDATING, "Validating inputs", lambda: validate_config(config))
        if not validation.succeeded:
            return self._finish(PipelineState.ABORTED, validation.exit_code)

        handle = RepositoryHandle.from_config(config)

        if config.cleanup_mode:
            self._steps.step("Cleaning up remote resources")
            result = run_cleanup(config, handle, self._executor)
            self._results.append(result)
            LOGGER.info("%s", result.message)
            return self._finish(PipelineState.CLEANED_UP, ExitCode.CLEANUP_DONE)

        stages: list[tuple[PipelineState, str, StageCall]] = [
            (PipelineState.SYNCING, "Cloning or updating repository", lambda: sync_repository(config, handle)),
            (PipelineState.CONNECTING, "Checking remote connectivity", lambda: check_connectivity(config, self._executor)),
            (PipelineState.BOOTSTRAPPING, "Preparing remote environment", lambda: bootstrap_remote(config, self._executor)),
            (
                PipelineState.DEPLOYING,
                "Transferring project and deploying containers",
                lambda: deploy_application(config, handle, self._executor),
            ),
            (
                PipelineState.CONFIGURING_PROXY,
                "Configuring nginx reverse proxy",
                lambda: configure_proxy(config, handle, self._executor),
            ),
            (
                PipelineState.VALIDATING_DEPLOYMENT,
                "Validating deployment",
                lambda: validate_deployment(config, handle, self._executor),
            ),
        ]
        for state, title, call in stages:
            result = self._run_stage(state, title, call)
            if not result.succeeded:
                return self._finish(PipelineState.ABORTED, result.exit_code)

        LOGGER.info("Deployment completed successfully!")
        return self._finish(PipelineState.SUCCEEDED, ExitCode.SUCCESS)
