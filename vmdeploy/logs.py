"""Run log setup and credential masking."""

from __future__ import annotations

import logging
import re
import sys
from datetime import datetime
from pathlib import Path


LOG_PREFIX = "[vmdeploy]"
MASK = "[MASKED]"

_LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# user:token@ or token@ in the authority of an http(s) URL.
_URL_USERINFO_PATTERN = re.compile(r"(https?://)[^/@\s]+@")

logger = logging.getLogger(__name__)


def mask_url(url: str) -> str:
    """Replace the userinfo segment of an HTTP(S) URL with a placeholder."""
    return _URL_USERINFO_PATTERN.sub(rf"\1{MASK}@", str(url or ""))


def mask_text(text: str, secrets: list[str] | tuple[str, ...] = ()) -> str:
    out = mask_url(text)
    for secret in secrets:
        if secret:
            out = out.replace(secret, MASK)
    return out


class CredentialMaskFilter(logging.Filter):
    """Rewrite log records so that credentials never reach a handler."""

    def __init__(self, secrets: list[str] | tuple[str, ...] = ()):
        super().__init__()
        self._secrets = tuple(s for s in secrets if s)

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_text(message, self._secrets)
        if masked != message:
            record.msg = masked
            record.args = None
        if record.exc_info and not record.exc_text:
            # Handlers reuse exc_text when it is already set.
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = mask_text(record.exc_text, self._secrets)
        return True


def default_log_path(log_dir: Path | None = None, *, now: datetime | None = None) -> Path:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return (log_dir or Path.cwd()) / f"deploy_{stamp}.log"


def configure_logging(
    *,
    log_path: Path,
    secrets: list[str] | tuple[str, ...] = (),
    level: int = logging.INFO,
) -> Path:
    """Send every record to the timestamped run log and to the console."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    mask_filter = CredentialMaskFilter(secrets)
    formatter = logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    for handler in (file_handler, console_handler):
        handler.setFormatter(formatter)
        handler.addFilter(mask_filter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(logging.DEBUG)
    root.addHandler(file_handler)
    root.addHandler(console_handler)
    return log_path


class StepLogger:
    """Numbered progress headers for the pipeline."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger
        self._step_number = 0

    def step(self, message: str) -> None:
        self._step_number += 1
        self._log.info("%s Step %d: %s", LOG_PREFIX, self._step_number, message)
