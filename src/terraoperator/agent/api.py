from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from terraoperator.errors import ErrorKind
from terraoperator.storage import NullSink, ResultSink

from .agent import ExecutionAgent
from .models import ExecutionMode, ExecutionRequest, ExecutionResult

logger = logging.getLogger(__name__)

STATUS_FOR_KIND = {
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.INSTALL_FAILURE: 502,
    ErrorKind.CLONE_FAILURE: 502,
    ErrorKind.IO_FAILURE: 500,
    ErrorKind.INIT_FAILURE: 422,
    ErrorKind.EXECUTION_FAILURE: 422,
    ErrorKind.INTERNAL_ERROR: 500,
}

# -------------------- Schemas --------------------

class ExecutionRequestBody(BaseModel):
    version: str = Field(validation_alias=AliasChoices("version", "Version"))
    module_path: str = Field(validation_alias=AliasChoices("modulePath", "module_path", "ModulePath"))
    variables: Optional[dict[str, str]] = Field(
        default=None,
        validation_alias=AliasChoices("variables", "Variables"),
    )

    def to_request(self) -> ExecutionRequest:
        return ExecutionRequest(
            version=self.version,
            module_path=self.module_path,
            variables=dict(self.variables or {}),
        )

class ExecutionResponse(BaseModel):
    success: bool
    mode: str
    output: Optional[list[dict[str, Any]]] = None
    raw_output: str = ""
    partial: bool = False
    summary: dict[str, Any] = Field(default_factory=dict)
    diagnostics: list[str] = Field(default_factory=list)
    error_kind: Optional[str] = None
    error: Optional[str] = None

# -------------------- App --------------------

def status_for(result: ExecutionResult) -> int:
    if result.success:
        return 200
    return STATUS_FOR_KIND.get(result.error_kind, 500)


def create_app(agent: Optional[ExecutionAgent] = None, sink: Optional[ResultSink] = None) -> FastAPI:
    """Build the agent's HTTP app around one shared ExecutionAgent."""
    app = FastAPI(title="terraoperator execution agent")
    app.state.agent = agent or ExecutionAgent()
    app.state.sink = sink or NullSink()

    @app.on_event("startup")
    async def startup() -> None:
        await app.state.sink.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await app.state.sink.close()

    @app.exception_handler(RequestValidationError)
    async def invalid_schema(request: Request, exc: RequestValidationError):
        errors = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content=ExecutionResponse(
                success=False,
                mode=request.url.path.strip("/"),
                error_kind=ErrorKind.INVALID_REQUEST.value,
                error=f"invalid schema: {errors}",
            ).model_dump(),
        )

    async def execute(body: ExecutionRequestBody, mode: ExecutionMode) -> JSONResponse:
        req = body.to_request()
        # the agent blocks on install/clone/subprocesses; keep it off the event loop
        result = await run_in_threadpool(app.state.agent.handle, req, mode)
        try:
            await app.state.sink.record(req, mode, result)
        except Exception:
            logger.exception("Failed to record %s result for %s", mode.value, req.module_path)
        return JSONResponse(status_code=status_for(result), content=result.to_dict())

    @app.post("/plan", response_model=ExecutionResponse)
    async def plan(body: ExecutionRequestBody):
        return await execute(body, ExecutionMode.PLAN)

    @app.post("/apply", response_model=ExecutionResponse)
    async def apply(body: ExecutionRequestBody):
        return await execute(body, ExecutionMode.APPLY)

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    return app
