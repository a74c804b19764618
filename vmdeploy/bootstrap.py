"""Install and start the container engine, compose tool and nginx."""

from __future__ import annotations

import logging

from .config import DeploymentConfig
from .remote import (
    DetectPackageManager,
    EnsureGroupMembership,
    EnsurePackage,
    EnsureServiceRunning,
    Probe,
    RemoteCommandSpec,
    RemoteExecutor,
)
from .results import ExitCode, StageResult


STAGE = "bootstrap-remote"

DOCKER_APT_INSTALL = """\
$SUDO apt-get install -y ca-certificates curl gnupg >/dev/null
$SUDO install -m 0755 -d /etc/apt/keyrings
DISTRO_ID="$(. /etc/os-release && echo "$ID")"
curl -fsSL "https://download.docker.com/linux/$DISTRO_ID/gpg" | $SUDO gpg --batch --yes --dearmor -o /etc/apt/keyrings/docker.gpg
echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.gpg] https://download.docker.com/linux/$DISTRO_ID $(. /etc/os-release && echo "$VERSION_CODENAME") stable" | $SUDO tee /etc/apt/sources.list.d/docker.list >/dev/null
$SUDO apt-get update -y >/dev/null
$SUDO apt-get install -y docker-ce docker-ce-cli containerd.io >/dev/null"""

DOCKER_RPM_INSTALL = """\
if [ "$PKG_MANAGER" = "dnf" ]; then
  $SUDO dnf install -y dnf-plugins-core >/dev/null
  $SUDO dnf config-manager --add-repo https://download.docker.com/linux/centos/docker-ce.repo >/dev/null
else
  $SUDO yum install -y yum-utils >/dev/null
  $SUDO yum-config-manager --add-repo https://download.docker.com/linux/centos/docker-ce.repo >/dev/null
fi
$SUDO "$PKG_MANAGER" install -y docker-ce docker-ce-cli containerd.io >/dev/null"""

COMPOSE_APT_INSTALL = (
    "$SUDO apt-get install -y docker-compose-plugin >/dev/null 2>&1 "
    "|| $SUDO apt-get install -y docker-compose >/dev/null"
)
COMPOSE_RPM_INSTALL = (
    '$SUDO "$PKG_MANAGER" install -y docker-compose-plugin >/dev/null 2>&1 '
    '|| $SUDO "$PKG_MANAGER" install -y docker-compose >/dev/null'
)

# nginx lives in /usr/sbin, which is not on a non-root user's PATH on Debian.
NGINX_BIN = '"$(command -v nginx || echo /usr/sbin/nginx)"'

DOCKER_PACKAGE = EnsurePackage(
    name="docker",
    check="command -v docker >/dev/null 2>&1",
    apt_install=DOCKER_APT_INSTALL,
    rpm_install=DOCKER_RPM_INSTALL,
)
COMPOSE_PACKAGE = EnsurePackage(
    name="docker-compose",
    check="{ docker compose version >/dev/null 2>&1 || command -v docker-compose >/dev/null 2>&1; }",
    apt_install=COMPOSE_APT_INSTALL,
    rpm_install=COMPOSE_RPM_INSTALL,
)
NGINX_PACKAGE = EnsurePackage(
    name="nginx",
    check="{ command -v nginx || [ -x /usr/sbin/nginx ]; } >/dev/null 2>&1",
    apt_install="$SUDO apt-get install -y nginx >/dev/null",
    rpm_install='$SUDO "$PKG_MANAGER" install -y nginx >/dev/null',
)

LOGGER = logging.getLogger(__name__)


def bootstrap_spec() -> RemoteCommandSpec:
    return RemoteCommandSpec(
        description="prepare remote environment",
        operations=(
            DetectPackageManager(),
            DOCKER_PACKAGE,
            COMPOSE_PACKAGE,
            NGINX_PACKAGE,
            EnsureServiceRunning("docker"),
            EnsureServiceRunning("nginx"),
            EnsureGroupMembership("docker"),
            Probe("docker_version", "docker --version 2>&1 || true"),
            Probe(
                "compose_version",
                "docker compose version 2>/dev/null || docker-compose --version 2>&1 || true",
            ),
            Probe("nginx_version", f"{NGINX_BIN} -v 2>&1 || true"),
        ),
    )


def bootstrap_remote(config: DeploymentConfig, executor: RemoteExecutor) -> StageResult:
    LOGGER.info("Preparing remote environment on %s...", config.ssh_target)
    result = executor.run(bootstrap_spec())
    if not result.succeeded:
        message = "Remote environment preparation failed."
        detail = result.detail()
        if detail:
            message = f"{message} {detail}"
        return StageResult.fail(STAGE, message, ExitCode.INSTALL_FAILURE)

    for notice in result.notices:
        # A fresh group grant is expected on first run; it is not an error.
        LOGGER.warning("%s", notice)
    values = result.values
    LOGGER.info("Package manager: %s", values.get("package_manager", "unknown"))
    for key in ("docker_version", "compose_version", "nginx_version"):
        LOGGER.info("Version check %s: %s", key, values.get(key) or "unavailable")

    if result.changes:
        message = f"Remote environment prepared ({', '.join(result.changes)})."
    else:
        message = "Remote environment already prepared; no changes made."
    return StageResult.ok(STAGE, message, changes=result.changes, notices=result.notices)
