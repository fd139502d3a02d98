# agent/agent.py
from __future__ import annotations

import logging
import time
from typing import Optional

from terraoperator.errors import ErrorKind, ExecutionError
from terraoperator.toolchain import ToolchainCache
from terraoperator.workspace import WorkspaceProvisioner

from .executor import ExecutionEngine
from .models import ExecutionMode, ExecutionRequest, ExecutionResult

logger = logging.getLogger(__name__)


class ExecutionAgent:
    """Runs execution requests: resolve the toolchain, provision a workspace, run the engine."""

    def __init__(
        self,
        toolchain: Optional[ToolchainCache] = None,
        provisioner: Optional[WorkspaceProvisioner] = None,
        engine: Optional[ExecutionEngine] = None,
    ):
        """
        Initialize agent.

        Args:
            toolchain: Shared version -> executable cache (one per process)
            provisioner: Creates one workspace per request
            engine: Runs init and plan/apply in a workspace
        """
        self.toolchain = toolchain or ToolchainCache()
        self.provisioner = provisioner or WorkspaceProvisioner()
        self.engine = engine or ExecutionEngine()

    def handle(
        self,
        request: ExecutionRequest,
        mode: ExecutionMode = ExecutionMode.PLAN,
    ) -> ExecutionResult:
        """
        Execute a single request.

        Never raises: every failure becomes a failed ExecutionResult, so one
        bad request cannot take down requests running beside it. Nothing is
        retried.
        """
        mode = ExecutionMode(mode)
        start_time = time.time()

        try:
            source = request.validate()
            executable = self.toolchain.resolve(request.version)
            workspace = self.provisioner.provision(source)
        except ExecutionError as e:
            logger.info("%s request for %s failed: %s", mode.value, request.module_path, e.kind.value)
            return ExecutionResult.failure(mode.value, e)
        except Exception as e:
            logger.exception("Unexpected error preparing %s request", mode.value)
            return ExecutionResult.failure(
                mode.value,
                ExecutionError(ErrorKind.INTERNAL_ERROR, f"{type(e).__name__}: {e}"),
            )

        with workspace:
            try:
                result = self.engine.run(workspace, executable, request.variables, mode)
            except Exception as e:
                logger.exception("Unexpected error running %s in workspace %s", mode.value, workspace.id)
                result = ExecutionResult.failure(
                    mode.value,
                    ExecutionError(ErrorKind.INTERNAL_ERROR, f"{type(e).__name__}: {e}"),
                )

        duration = time.time() - start_time
        logger.info(
            "%s of %s finished: success=%s duration=%.1fs",
            mode.value,
            request.module_path,
            result.success,
            duration,
        )
        return result
