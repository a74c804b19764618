"""Create and activate the nginx site that fronts the deployed container.

Idempotent: the site file is only written when absent and the enabled link
only created when absent, so a re-run leaves both byte-identical. The
configuration is always syntax-checked before nginx is reloaded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import DeploymentConfig
from .remote import EnsureSymlink, RemoteCommandSpec, RemoteExecutor, Run, WriteFileIfAbsent
from .repository import RepositoryHandle
from .results import ExitCode, StageResult


STAGE = "configure-proxy"

NGINX_SITES_AVAILABLE = "/etc/nginx/sites-available"
NGINX_SITES_ENABLED = "/etc/nginx/sites-enabled"
LISTEN_PORT = 80

# Placeholders: {listen_port}, {upstream_port}, {app_name}. Braces are doubled
# for str.format; nginx $variables survive because the file is written through
# a quoted heredoc.
SITE_TEMPLATE = """\
server {{
    listen {listen_port};
    server_name _;

    location / {{
        proxy_pass http://127.0.0.1:{upstream_port};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }}

    # SSL placeholder - to enable, replace with Certbot or self-signed cert paths
    # listen 443 ssl;
    # ssl_certificate /etc/ssl/certs/{app_name}.crt;
    # ssl_certificate_key /etc/ssl/private/{app_name}.key;
}}
"""

NGINX_TEST_CMD = "$SUDO nginx -t"
NGINX_RELOAD_CMD = "$SUDO systemctl reload nginx"

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReverseProxySite:
    app_name: str
    config_path: str
    enabled_path: str
    upstream_port: int

    @classmethod
    def for_app(cls, app_name: str, upstream_port: int) -> ReverseProxySite:
        return cls(
            app_name=app_name,
            config_path=f"{NGINX_SITES_AVAILABLE}/{app_name}.conf",
            enabled_path=f"{NGINX_SITES_ENABLED}/{app_name}.conf",
            upstream_port=int(upstream_port),
        )

    def render(self) -> str:
        return SITE_TEMPLATE.format(
            listen_port=LISTEN_PORT,
            upstream_port=self.upstream_port,
            app_name=self.app_name,
        )


def proxy_spec(site: ReverseProxySite) -> RemoteCommandSpec:
    return RemoteCommandSpec(
        description=f"configure nginx for {site.app_name}",
        operations=(
            Run(f"$SUDO mkdir -p {NGINX_SITES_AVAILABLE} {NGINX_SITES_ENABLED}"),
            WriteFileIfAbsent(path=site.config_path, content=site.render()),
            EnsureSymlink(target=site.config_path, link=site.enabled_path),
            # Validate first so a broken config is never reloaded.
            Run(NGINX_TEST_CMD, announce="Testing nginx configuration...", error="nginx configuration test failed"),
            Run(NGINX_RELOAD_CMD, announce="Reloading nginx...", error="nginx reload failed"),
            Run(
                "$SUDO systemctl status nginx --no-pager | head -n 5",
                best_effort=True,
                label="nginx status",
            ),
        ),
    )


def configure_proxy(config: DeploymentConfig, handle: RepositoryHandle, executor: RemoteExecutor) -> StageResult:
    site = ReverseProxySite.for_app(handle.app_name, config.host_port_number)
    LOGGER.info("Configuring nginx reverse proxy for %s -> 127.0.0.1:%s...", site.app_name, site.upstream_port)
    result = executor.run(proxy_spec(site))
    if not result.succeeded:
        message = f"Nginx configuration failed. {result.detail()}".strip()
        return StageResult.fail(STAGE, message, ExitCode.PROXY_FAILURE)

    if result.changes:
        message = f"Nginx reverse proxy configured ({', '.join(result.changes)})."
    else:
        message = "Nginx reverse proxy already configured; configuration validated and reloaded."
    return StageResult.ok(STAGE, message, changes=result.changes)
