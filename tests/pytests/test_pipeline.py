from __future__ import annotations

import pytest

from vmdeploy import connectivity, health, repository
from vmdeploy.pipeline import Orchestrator, PipelineState
from vmdeploy.results import ExitCode


class _Response:
    status_code = 200


@pytest.fixture
def offline_tools(monkeypatch, git_factory):
    """Stub out git, ping and the external HTTP probe."""
    git_calls: list[list[str]] = []
    monkeypatch.setattr(repository.subprocess, "run", git_factory(git_calls))
    monkeypatch.setattr(connectivity, "ping_host", lambda host: True)
    monkeypatch.setattr(health.requests, "get", lambda url, **kwargs: _Response())
    return git_calls


def test_invalid_container_port_aborts_before_any_remote_call(make_config, fake_host, offline_tools):
    outcome = Orchestrator(make_config(container_port=0), executor=fake_host).run()

    assert outcome.state is PipelineState.ABORTED
    assert outcome.exit_code == ExitCode.PARAM_ERROR
    assert fake_host.network_calls == 0
    assert offline_tools == []
    assert outcome.history == (PipelineState.VALIDATING, PipelineState.ABORTED)


def test_compose_deployment_succeeds(make_config, fake_host, offline_tools):
    outcome = Orchestrator(make_config(host_port=8080), executor=fake_host).run()

    assert outcome.state is PipelineState.SUCCEEDED
    assert outcome.exit_code == ExitCode.SUCCESS
    assert outcome.history == (
        PipelineState.VALIDATING,
        PipelineState.SYNCING,
        PipelineState.CONNECTING,
        PipelineState.BOOTSTRAPPING,
        PipelineState.DEPLOYING,
        PipelineState.CONFIGURING_PROXY,
        PipelineState.VALIDATING_DEPLOYMENT,
        PipelineState.SUCCEEDED,
    )
    assert any("up -d --build" in cmd for cmd in fake_host.commands)
    assert "proxy_pass http://127.0.0.1:8080;" in fake_host.files["/etc/nginx/sites-available/web-app.conf"]
    assert outcome.failed_result is None


def test_second_run_changes_nothing_on_the_host(make_config, fake_host, offline_tools):
    config = make_config()
    Orchestrator(config, executor=fake_host).run()
    files = dict(fake_host.files)
    fake_host.package_installs.clear()

    outcome = Orchestrator(config, executor=fake_host).run()

    assert outcome.state is PipelineState.SUCCEEDED
    assert fake_host.package_installs == []
    assert fake_host.files == files


def test_missing_ssh_key_aborts_before_connectivity(make_config, fake_host, offline_tools):
    outcome = Orchestrator(make_config(ssh_key_path="/no/such/key"), executor=fake_host).run()

    assert outcome.exit_code == ExitCode.PARAM_ERROR
    assert fake_host.connection_checks == 0
    assert PipelineState.CONNECTING not in outcome.history


def test_remote_http_500_is_validation_failure(make_config, host_factory, offline_tools):
    host = host_factory(probes={"http_code": "500"})

    outcome = Orchestrator(make_config(), executor=host).run()

    assert outcome.state is PipelineState.ABORTED
    assert outcome.exit_code == ExitCode.VALIDATION_FAILURE
    assert outcome.exit_code != ExitCode.DEPLOY_FAILURE
    assert outcome.failed_result.stage == "validate-deployment"


def test_cleanup_mode_skips_deployment_stages(make_config, fake_host, offline_tools):
    outcome = Orchestrator(make_config(cleanup_mode=True, credential=""), executor=fake_host).run()

    assert outcome.state is PipelineState.CLEANED_UP
    assert outcome.exit_code == ExitCode.CLEANUP_DONE
    assert offline_tools == []
    assert fake_host.connection_checks == 0
    assert len(fake_host.specs) == 1
    assert any("sites-enabled/web-app.conf" in cmd for cmd in fake_host.commands)


def test_first_failure_stops_the_pipeline(make_config, host_factory, offline_tools):
    host = host_factory(reachable=False)

    outcome = Orchestrator(make_config(), executor=host).run()

    assert outcome.exit_code == ExitCode.SSH_FAILURE
    assert host.specs == []
    assert outcome.history[-2:] == (PipelineState.CONNECTING, PipelineState.ABORTED)


def test_unexpected_exception_is_classified(make_config, host_factory, offline_tools):
    class ExplodingHost(host_factory):
        def run(self, spec):
            raise RuntimeError("boom")

    outcome = Orchestrator(make_config(), executor=ExplodingHost()).run()

    assert outcome.state is PipelineState.ABORTED
    assert outcome.exit_code == ExitCode.UNEXPECTED
    assert outcome.failed_result.message == "Unexpected error: boom"


def test_cleanup_mode_completes_even_when_the_executor_raises(make_config, host_factory, offline_tools):
    class ExplodingHost(host_factory):
        def run(self, spec):
            raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

    outcome = Orchestrator(make_config(cleanup_mode=True), executor=ExplodingHost()).run()

    assert outcome.state is PipelineState.CLEANED_UP
    assert outcome.exit_code == ExitCode.CLEANUP_DONE
