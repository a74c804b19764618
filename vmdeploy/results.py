"""Stage outcomes and process exit classifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    UNEXPECTED = 1
    PARAM_ERROR = 10
    SSH_FAILURE = 20
    INSTALL_FAILURE = 30
    DEPLOY_FAILURE = 40
    PROXY_FAILURE = 50
    VALIDATION_FAILURE = 60
    CLEANUP_DONE = 100


@dataclass(frozen=True)
class StageResult:
    stage: str
    succeeded: bool
    message: str
    exit_code: int = ExitCode.SUCCESS
    changes: tuple[str, ...] = field(default_factory=tuple)
    notices: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def ok(
        cls,
        stage: str,
        message: str,
        *,
        changes: tuple[str, ...] | list[str] = (),
        notices: tuple[str, ...] | list[str] = (),
    ) -> StageResult:
        return cls(
            stage=stage,
            succeeded=True,
            message=message,
            exit_code=ExitCode.SUCCESS,
            changes=tuple(changes),
            notices=tuple(notices),
        )

    @classmethod
    def fail(
        cls,
        stage: str,
        message: str,
        exit_code: ExitCode,
        *,
        notices: tuple[str, ...] | list[str] = (),
    ) -> StageResult:
        return cls(
            stage=stage,
            succeeded=False,
            message=message,
            exit_code=int(exit_code),
            notices=tuple(notices),
        )
