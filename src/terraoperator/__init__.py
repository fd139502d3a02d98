from .agent.agent import ExecutionAgent
from .agent.executor import ExecutionEngine
from .agent.models import ExecutionMode, ExecutionRequest, ExecutionResult
from .errors import ErrorKind, ExecutionError
from .model import ModuleDeclaration, ModuleSource
from .toolchain import ToolchainCache
from .workspace import Workspace, WorkspaceProvisioner

__all__ = [
    "ExecutionAgent",
    "ExecutionEngine",
    "ExecutionMode",
    "ExecutionRequest",
    "ExecutionResult",
    "ErrorKind",
    "ExecutionError",
    "ModuleDeclaration",
    "ModuleSource",
    "ToolchainCache",
    "Workspace",
    "WorkspaceProvisioner",
]
