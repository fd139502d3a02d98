# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    CREATE_CONFLICT = "CreateConflict"
    INSTALL_FAILURE = "InstallFailure"
    CLONE_FAILURE = "CloneFailure"
    IO_FAILURE = "IOFailure"
    INIT_FAILURE = "InitFailure"
    EXECUTION_FAILURE = "ExecutionFailure"
    INVALID_REQUEST = "InvalidRequest"
    PARTIAL_RESULT = "PartialResult"
    INTERNAL_ERROR = "InternalError"


@dataclass
class ExecutionError(Exception):
    """
    Structured execution failure.

    Raised by the toolchain cache, the workspace provisioner and request
    validation. The agent turns it into a failed ExecutionResult, so it never
    escapes the request-handling path.
    """
    kind: ErrorKind
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind.value}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)
