"""
Shared pytest fixtures for terraoperator tests.

This module provides:
- fake_terraform: a shell script standing in for the terraform binary
- CountingInstaller: a toolchain installer that records how often it ran
- fake_clone: a clone function that writes a module instead of calling git
- agent: an ExecutionAgent wired to all of the above
"""

import os
import stat
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

import pytest

from terraoperator.agent.agent import ExecutionAgent
from terraoperator.agent.executor import ExecutionEngine
from terraoperator.git_facts.git import GitError
from terraoperator.toolchain import ToolchainCache
from terraoperator.workspace import WorkspaceProvisioner


requires_posix = pytest.mark.skipif(
    sys.platform.startswith("win"), reason="fake terraform is a POSIX shell script"
)


# =============================================================================
# Fake terraform binary
# =============================================================================

FAKE_TERRAFORM = r"""#!/bin/sh
# Stand-in for terraform: logs its arguments and prints -json style output.
echo "$*" >> "$FAKE_TF_LOG"
cmd="$1"
shift
case "$cmd" in
  init)
    if [ -n "$FAKE_TF_INIT_FAIL" ]; then
      echo "Error: Failed to query available provider packages" >&2
      exit 1
    fi
    echo "Terraform has been successfully initialized!"
    ;;
  plan|apply)
    if [ -n "$FAKE_TF_RAW" ]; then
      echo "this is not json"
      exit 0
    fi
    dir="$(pwd -P)"
    printf '{"@level":"info","@message":"Terraform 1.6.0","type":"version","terraform":"1.6.0"}\n'
    printf '{"@level":"info","@message":"module at %s","type":"planned_change","module_dir":"%s"}\n' "$dir" "$dir"
    for arg in "$@"; do
      case "$arg" in
        -var=*) printf '{"@level":"info","@message":"%s","type":"variable"}\n' "${arg#-var=}" ;;
      esac
    done
    if [ -n "$FAKE_TF_PLAN_FAIL" ]; then
      printf '{"@level":"error","@message":"Error: Invalid value","type":"diagnostic","diagnostic":{"severity":"error","summary":"Invalid value","detail":"region is not valid"}}\n'
      echo "exiting with errors" >&2
      exit 1
    fi
    printf '{"@level":"info","@message":"Plan: 1 to add, 0 to change, 0 to destroy.","type":"change_summary","changes":{"add":1,"change":0,"remove":0,"operation":"%s"}}\n' "$cmd"
    ;;
  *)
    echo "unknown command $cmd" >&2
    exit 2
    ;;
esac
"""


def write_fake_terraform(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(FAKE_TERRAFORM)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def tf_log(tmp_path, monkeypatch) -> Path:
    """File the fake terraform appends its argument lines to."""
    log = tmp_path / "terraform-calls.log"
    log.touch()
    monkeypatch.setenv("FAKE_TF_LOG", str(log))
    for var in ("FAKE_TF_INIT_FAIL", "FAKE_TF_PLAN_FAIL", "FAKE_TF_RAW"):
        monkeypatch.delenv(var, raising=False)
    return log


def tf_calls(log: Path) -> List[str]:
    return [line for line in log.read_text().splitlines() if line]


@pytest.fixture
def fake_terraform(tmp_path, tf_log) -> Path:
    return write_fake_terraform(tmp_path / "bin" / "terraform")


# =============================================================================
# Toolchain installer
# =============================================================================

class CountingInstaller:
    """Installs the fake terraform and counts installs per version."""

    def __init__(self, delay: float = 0.0, fail: Optional[Exception] = None):
        self.delay = delay
        self.fail = fail
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def install(self, version: str, dest: Path) -> Path:
        with self._lock:
            self.calls.append(version)
        if self.delay:
            time.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        return write_fake_terraform(dest / "terraform")


@pytest.fixture
def installer() -> CountingInstaller:
    return CountingInstaller()


@pytest.fixture
def toolchain(tmp_path, installer) -> ToolchainCache:
    return ToolchainCache(tmp_path / "toolchains", installer=installer)


# =============================================================================
# Workspaces
# =============================================================================

UNREACHABLE = "https://unreachable.invalid/repo.git"


class FakeClone:
    """Writes a small module into the destination; unreachable URLs fail like git does."""

    def __init__(self):
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def __call__(self, url: str, dest: Path, ref: Optional[str] = None) -> Path:
        with self._lock:
            self.calls.append((url, str(dest), ref))
        if "unreachable" in url:
            raise GitError("git clone failed (exit=128): could not resolve host")
        (dest / "main.tf").write_text('variable "region" {\n  default = "eu-west-1"\n}\n')
        (dest / "modules" / "network").mkdir(parents=True)
        (dest / "modules" / "network" / "main.tf").write_text("")
        return dest


@pytest.fixture
def fake_clone() -> FakeClone:
    return FakeClone()


@pytest.fixture
def workspace_root(tmp_path) -> Path:
    return tmp_path / "workspaces"


@pytest.fixture
def provisioner(workspace_root, fake_clone) -> WorkspaceProvisioner:
    return WorkspaceProvisioner(workspace_root, clone=fake_clone)


class RecordingEngine(ExecutionEngine):
    """ExecutionEngine that remembers which workspaces it ran in."""

    def __init__(self):
        super().__init__()
        self.workspaces: List[Path] = []
        self._lock = threading.Lock()

    def run(self, workspace, executable, variables, mode="plan"):
        with self._lock:
            self.workspaces.append(workspace.path)
        return super().run(workspace, executable, variables, mode)


@pytest.fixture
def engine() -> RecordingEngine:
    return RecordingEngine()


@pytest.fixture
def agent(toolchain, provisioner, engine, tf_log) -> ExecutionAgent:
    return ExecutionAgent(toolchain=toolchain, provisioner=provisioner, engine=engine)


def leftover_workspaces(root: Path) -> List[str]:
    if not root.exists():
        return []
    return sorted(os.listdir(root))
