# agent/executor.py
from __future__ import annotations

import io
import json
import logging
import os
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from terraoperator.errors import ErrorKind, ExecutionError
from terraoperator.workspace import Workspace

from .models import ExecutionMode, ExecutionResult

logger = logging.getLogger(__name__)


class OutputCapture:
    """
    Collects a process's stdout line by line while it runs.

    Every line is logged at DEBUG as it arrives, so long plans show progress
    in the agent logs; the full text is kept for parsing at the end.
    """

    def __init__(self, label: str):
        self.label = label
        self.buffer = io.StringIO()

    def write(self, text: str) -> int:
        self.buffer.write(text)
        line = text.rstrip("\n")
        if line:
            logger.debug("[%s] %s", self.label, line)
        return len(text)

    def getvalue(self) -> str:
        return self.buffer.getvalue()


@dataclass(frozen=True)
class StepOutput:
    returncode: int
    stdout: str
    stderr: str


def variable_args(variables: Mapping[str, str]) -> List[str]:
    """One -var assignment per variable, sorted by name so the command is deterministic."""
    return [f"-var={key}={variables[key]}" for key in sorted(variables)]


def build_command(executable: str, mode: ExecutionMode, variables: Mapping[str, str]) -> List[str]:
    if mode is ExecutionMode.APPLY:
        cmd = [executable, "apply", "-input=false", "-auto-approve", "-json"]
    else:
        cmd = [executable, "plan", "-input=false", "-json"]
    return cmd + variable_args(variables)


def parse_json_stream(text: str) -> List[Dict[str, Any]]:
    """
    Decode the tool's machine-readable output: one JSON object per line.

    Raises:
        ValueError: if any non-empty line is not a JSON object
    """
    messages: List[Dict[str, Any]] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        msg = json.loads(line)  # JSONDecodeError is a ValueError
        if not isinstance(msg, dict):
            raise ValueError(f"expected a JSON object, got: {line[:80]}")
        messages.append(msg)
    return messages


def _lenient_messages(text: str) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for line in text.splitlines():
        try:
            msg = json.loads(line)
        except ValueError:
            continue
        if isinstance(msg, dict):
            out.append(msg)
    return out


def change_summary(messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    for msg in reversed(messages):
        if msg.get("type") == "change_summary":
            return dict(msg.get("changes") or {})
    return {}


def error_diagnostics(messages: List[Dict[str, Any]]) -> List[str]:
    out: List[str] = []
    for msg in messages:
        if msg.get("type") != "diagnostic":
            continue
        diag = msg.get("diagnostic") or {}
        if diag.get("severity") != "error":
            continue
        summary = diag.get("summary") or msg.get("@message", "")
        detail = diag.get("detail")
        out.append(f"{summary}: {detail}" if detail else summary)
    return out


class ExecutionEngine:
    """
    Runs init followed by plan or apply inside a provisioned workspace.

    The workspace path is passed to every subprocess as its cwd; the agent
    process never changes directory, so concurrent runs cannot interfere.
    """

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self.extra_env = dict(env or {})

    def _env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env["TF_IN_AUTOMATION"] = "1"
        env["TF_INPUT"] = "0"
        env.update(self.extra_env)
        return env

    def _run_step(self, cmd: List[str], cwd: Path, label: str) -> StepOutput:
        """
        Run one tool invocation, streaming stdout and draining stderr concurrently.

        Raises:
            OSError: if the executable cannot be started
        """
        capture = OutputCapture(label)
        proc = subprocess.Popen(
            cmd,
            cwd=str(cwd),
            env=self._env(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
        stderr_chunks: List[str] = []
        drain = threading.Thread(
            target=lambda: stderr_chunks.append(proc.stderr.read()),
            daemon=True,
        )
        drain.start()
        try:
            for line in proc.stdout:
                capture.write(line)
        except BaseException:
            proc.kill()
            raise
        finally:
            proc.stdout.close()
            returncode = proc.wait()
            drain.join()
            proc.stderr.close()

        return StepOutput(returncode=returncode, stdout=capture.getvalue(), stderr="".join(stderr_chunks))

    def init(self, workspace: Workspace, executable: str) -> Tuple[bool, str]:
        cmd = [executable, "init", "-input=false", "-no-color", "-upgrade"]
        try:
            out = self._run_step(cmd, workspace.module_dir, f"{workspace.id} init")
        except OSError as e:
            return False, f"could not start {executable}: {e}"
        text = (out.stdout + out.stderr).strip()
        return out.returncode == 0, text

    def run(
        self,
        workspace: Workspace,
        executable: str,
        variables: Mapping[str, str],
        mode: ExecutionMode = ExecutionMode.PLAN,
    ) -> ExecutionResult:
        """
        Initialize the module, then plan or apply it.

        If init fails nothing else runs and the result carries InitFailure.
        A non-zero plan/apply yields ExecutionFailure with the output captured
        up to the failure. Output that does not decode as JSON is returned raw
        with the partial flag set.
        """
        mode = ExecutionMode(mode)

        ok, init_output = self.init(workspace, executable)
        if not ok:
            logger.info("init failed in workspace %s", workspace.id)
            return ExecutionResult.failure(
                mode.value,
                ExecutionError(ErrorKind.INIT_FAILURE, "terraform init failed"),
                raw_output=init_output,
                diagnostics=[line for line in init_output.splitlines() if line.startswith("Error")],
            )

        cmd = build_command(executable, mode, variables)
        try:
            out = self._run_step(cmd, workspace.module_dir, f"{workspace.id} {mode.value}")
        except OSError as e:
            return ExecutionResult.failure(
                mode.value,
                ExecutionError(ErrorKind.EXECUTION_FAILURE, f"could not start {executable}: {e}"),
            )

        if out.returncode != 0:
            diagnostics = error_diagnostics(_lenient_messages(out.stdout))
            if out.stderr.strip():
                diagnostics.append(out.stderr.strip())
            logger.info("%s exited with %s in workspace %s", mode.value, out.returncode, workspace.id)
            return ExecutionResult.failure(
                mode.value,
                ExecutionError(
                    ErrorKind.EXECUTION_FAILURE,
                    f"terraform {mode.value} failed (exit={out.returncode})",
                ),
                raw_output=out.stdout,
                diagnostics=diagnostics,
            )

        try:
            messages = parse_json_stream(out.stdout)
        except ValueError as e:
            logger.warning("%s output in workspace %s is not structured: %s", mode.value, workspace.id, e)
            return ExecutionResult(
                success=True,
                mode=mode.value,
                raw_output=out.stdout,
                partial=True,
                error_kind=ErrorKind.PARTIAL_RESULT,
                error=f"output could not be parsed: {e}",
            )

        return ExecutionResult(
            success=True,
            mode=mode.value,
            output=messages,
            raw_output=out.stdout,
            summary=change_summary(messages),
        )
