# agent/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from terraoperator.errors import ErrorKind, ExecutionError
from terraoperator.model import ModuleSource


class ExecutionMode(str, Enum):
    PLAN = "plan"
    APPLY = "apply"


@dataclass(frozen=True)
class ExecutionRequest:
    """What a job asks the agent to run: a tool version, a module and its variables."""
    version: str
    module_path: str
    variables: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ExecutionRequest:
        """Create a request from the wire form (camelCase, snake_case or capitalized keys)."""
        return cls(
            version=data.get("version", data.get("Version", "")),
            module_path=data.get("modulePath", data.get("module_path", data.get("ModulePath", ""))),
            variables=dict(data.get("variables", data.get("Variables")) or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "modulePath": self.module_path,
            "variables": dict(self.variables),
        }

    def validate(self) -> ModuleSource:
        """
        Check the request shape and return the parsed module source.

        Raises:
            ExecutionError: with kind InvalidRequest
        """
        if not isinstance(self.version, str) or not self.version.strip():
            raise ExecutionError(ErrorKind.INVALID_REQUEST, "version must be a non-empty string")
        if not isinstance(self.module_path, str) or not self.module_path.strip():
            raise ExecutionError(ErrorKind.INVALID_REQUEST, "modulePath must be a non-empty string")
        if not isinstance(self.variables, dict):
            raise ExecutionError(ErrorKind.INVALID_REQUEST, "variables must be a mapping")
        for key, value in self.variables.items():
            if not isinstance(key, str) or not key or "=" in key:
                raise ExecutionError(
                    ErrorKind.INVALID_REQUEST,
                    f"invalid variable name: {key!r}",
                )
            if not isinstance(value, str):
                raise ExecutionError(
                    ErrorKind.INVALID_REQUEST,
                    f"variable {key!r} must be a string",
                )
        try:
            return ModuleSource.parse(self.module_path)
        except ValueError as e:
            raise ExecutionError(ErrorKind.INVALID_REQUEST, str(e))


@dataclass(frozen=True)
class ExecutionResult:
    """Terminal result of one execution request."""
    success: bool
    mode: str
    output: Optional[List[Dict[str, Any]]] = None  # decoded JSON messages
    raw_output: str = ""
    partial: bool = False
    summary: Dict[str, Any] = field(default_factory=dict)
    diagnostics: List[str] = field(default_factory=list)
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @classmethod
    def failure(
        cls,
        mode: str,
        error: ExecutionError,
        raw_output: str = "",
        diagnostics: Optional[List[str]] = None,
    ) -> ExecutionResult:
        return cls(
            success=False,
            mode=mode,
            raw_output=raw_output,
            diagnostics=list(diagnostics or []),
            error_kind=error.kind,
            error=error.message,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire form returned by the HTTP surface."""
        return {
            "success": self.success,
            "mode": self.mode,
            "output": self.output,
            "raw_output": self.raw_output,
            "partial": self.partial,
            "summary": dict(self.summary),
            "diagnostics": list(self.diagnostics),
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ExecutionResult:
        kind = data.get("error_kind")
        return cls(
            success=bool(data.get("success")),
            mode=data.get("mode", ExecutionMode.PLAN.value),
            output=data.get("output"),
            raw_output=data.get("raw_output") or "",
            partial=bool(data.get("partial")),
            summary=dict(data.get("summary") or {}),
            diagnostics=list(data.get("diagnostics") or []),
            error_kind=ErrorKind(kind) if kind else None,
            error=data.get("error"),
        )
