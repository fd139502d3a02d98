"""End-to-end tests for ExecutionAgent.handle with fake toolchain, clone and terraform."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import UNREACHABLE, CountingInstaller, leftover_workspaces, requires_posix, tf_calls
from terraoperator.agent.agent import ExecutionAgent
from terraoperator.agent.models import ExecutionMode, ExecutionRequest
from terraoperator.errors import ErrorKind
from terraoperator.toolchain import ToolchainCache

pytestmark = requires_posix

MODULE = "https://example/repo.git"


def test_first_request_installs_and_second_reuses_toolchain(agent, installer, engine, workspace_root):
    request = ExecutionRequest(version="1.6.0", module_path=MODULE, variables={})

    first = agent.handle(request)
    second = agent.handle(request)

    assert first.success and second.success
    assert installer.calls == ["1.6.0"]
    assert len(engine.workspaces) == 2
    assert engine.workspaces[0] != engine.workspaces[1]
    assert leftover_workspaces(workspace_root) == []


def test_plan_reflects_module_and_variables(agent, engine):
    request = ExecutionRequest(version="1.6.0", module_path=MODULE, variables={"region": "us-east-1"})

    result = agent.handle(request)

    assert result.success
    planned = next(m for m in result.output if m["type"] == "planned_change")
    assert planned["module_dir"] == str(engine.workspaces[0])
    assert {"@level": "info", "@message": "region=us-east-1", "type": "variable"} in result.output


def test_empty_variables_behave_like_no_assignments(agent, tf_log):
    with_vars = agent.handle(ExecutionRequest("1.6.0", MODULE, {"region": "us-east-1"}))
    without = agent.handle(ExecutionRequest("1.6.0", MODULE, {}))

    assert with_vars.success and without.success
    assert [m["type"] for m in without.output] == ["version", "planned_change", "change_summary"]
    assert tf_calls(tf_log)[-1] == "plan -input=false -json"


def test_unreachable_module_is_clone_failure_without_leftovers(agent, engine, workspace_root):
    result = agent.handle(ExecutionRequest("1.6.0", UNREACHABLE, {"region": "us-east-1"}))

    assert not result.success
    assert result.error_kind is ErrorKind.CLONE_FAILURE
    assert engine.workspaces == []
    assert leftover_workspaces(workspace_root) == []


def test_install_failure_never_touches_workspace(tmp_path, provisioner, engine, fake_clone, tf_log):
    agent = ExecutionAgent(
        toolchain=ToolchainCache(tmp_path / "toolchains", installer=CountingInstaller(fail=OSError("offline"))),
        provisioner=provisioner,
        engine=engine,
    )

    result = agent.handle(ExecutionRequest("1.6.0", MODULE, {}))

    assert result.error_kind is ErrorKind.INSTALL_FAILURE
    assert fake_clone.calls == []
    assert engine.workspaces == []


@pytest.mark.parametrize(
    "request_",
    [
        ExecutionRequest(version="", module_path=MODULE),
        ExecutionRequest(version="   ", module_path=MODULE),
        ExecutionRequest(version="1.6.0", module_path=""),
        ExecutionRequest(version="1.6.0", module_path=MODULE, variables={"": "x"}),
        ExecutionRequest(version="1.6.0", module_path=MODULE, variables={"a=b": "x"}),
        ExecutionRequest(version="1.6.0", module_path=f"{MODULE}?ref=--orphan=evil"),
        ExecutionRequest(version="1.6.0", module_path=MODULE, variables={"count": 3}),
    ],
)
def test_malformed_requests_are_rejected(agent, installer, fake_clone, request_):
    result = agent.handle(request_)

    assert not result.success
    assert result.error_kind is ErrorKind.INVALID_REQUEST
    assert installer.calls == []
    assert fake_clone.calls == []


def test_init_failure_never_runs_plan(agent, tf_log, monkeypatch, workspace_root):
    monkeypatch.setenv("FAKE_TF_INIT_FAIL", "1")

    result = agent.handle(ExecutionRequest("1.6.0", MODULE, {}))

    assert result.error_kind is ErrorKind.INIT_FAILURE
    assert all(not call.startswith("plan") for call in tf_calls(tf_log))
    assert leftover_workspaces(workspace_root) == []


def test_apply_mode_is_passed_through(agent, tf_log):
    result = agent.handle(ExecutionRequest("1.6.0", MODULE, {}), ExecutionMode.APPLY)

    assert result.success
    assert result.mode == "apply"
    assert tf_calls(tf_log)[-1].startswith("apply")


def test_unexpected_engine_error_still_releases_workspace(agent, engine, monkeypatch, workspace_root):
    def explode(*args, **kwargs):
        raise RuntimeError("engine bug")

    monkeypatch.setattr(engine, "run", explode)

    result = agent.handle(ExecutionRequest("1.6.0", MODULE, {}))

    assert not result.success
    assert result.error_kind is ErrorKind.INTERNAL_ERROR
    assert "engine bug" in result.error
    assert leftover_workspaces(workspace_root) == []


def test_concurrent_requests_are_isolated(agent, installer, engine, workspace_root):
    requests = [
        ExecutionRequest("1.6.0", MODULE, {"index": str(i)}) for i in range(6)
    ]

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(agent.handle, requests))

    assert all(r.success for r in results)
    for i, result in enumerate(results):
        variables = [m["@message"] for m in result.output if m["type"] == "variable"]
        assert variables == [f"index={i}"]
    assert installer.calls == ["1.6.0"]
    assert len(set(engine.workspaces)) == 6
    assert leftover_workspaces(workspace_root) == []
