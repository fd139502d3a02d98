# storage/sinks.py
from __future__ import annotations

import json
import logging
from typing import Optional, Protocol

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from terraoperator.agent.models import ExecutionMode, ExecutionRequest, ExecutionResult
from terraoperator.settings import DATABASE_URL, REDIS_URL, RESULTS_KEY

from .models import Base, ExecutionRecord

logger = logging.getLogger(__name__)


class ResultSink(Protocol):
    """Where terminal execution results are written. Storage itself is not the agent's concern."""

    async def start(self) -> None:
        ...

    async def record(self, request: ExecutionRequest, mode: ExecutionMode, result: ExecutionResult) -> None:
        ...

    async def close(self) -> None:
        ...


class NullSink:
    """Keeps nothing; results only go back to the caller."""

    async def start(self) -> None:
        pass

    async def record(self, request: ExecutionRequest, mode: ExecutionMode, result: ExecutionResult) -> None:
        logger.debug("Result for %s not persisted (no sink configured)", request.module_path)

    async def close(self) -> None:
        pass


class DatabaseSink:
    """Stores one row per result in the execution_results table."""

    def __init__(self, url: Optional[str] = None, session_factory=None):
        self.engine = None
        if session_factory is None:
            if not url:
                raise ValueError("DatabaseSink needs a database url or a session factory")
            self.engine = create_async_engine(url, pool_pre_ping=True)
            session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self.session_factory = session_factory

    async def start(self) -> None:
        # Creates the table if it doesn't exist.
        if self.engine is not None:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

    async def record(self, request: ExecutionRequest, mode: ExecutionMode, result: ExecutionResult) -> None:
        payload = result.to_dict()
        async with self.session_factory() as s:
            async with s.begin():
                s.add(ExecutionRecord(
                    mode=ExecutionMode(mode).value,
                    version=request.version,
                    module_path=request.module_path,
                    variables=dict(request.variables),
                    success=result.success,
                    partial=result.partial,
                    error_kind=payload["error_kind"],
                    error=result.error,
                    summary=dict(result.summary),
                    result_json=payload,
                ))

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()


class RedisSink:
    """Pushes each result as JSON onto a Redis list (oldest first)."""

    def __init__(self, url: Optional[str] = None, key: str = RESULTS_KEY, client=None):
        if client is None:
            if not url:
                raise ValueError("RedisSink needs a redis url or a client")
            client = redis.from_url(url, decode_responses=True)
        self.r = client
        self.key = key

    async def start(self) -> None:
        pass

    async def record(self, request: ExecutionRequest, mode: ExecutionMode, result: ExecutionResult) -> None:
        entry = {
            "mode": ExecutionMode(mode).value,
            "request": request.to_dict(),
            "result": result.to_dict(),
        }
        await self.r.rpush(self.key, json.dumps(entry))  # FIFO: push right

    async def close(self) -> None:
        await self.r.aclose()


def sink_from_settings(
    database_url: Optional[str] = DATABASE_URL,
    redis_url: Optional[str] = REDIS_URL,
    results_key: str = RESULTS_KEY,
) -> ResultSink:
    if database_url:
        return DatabaseSink(database_url)
    if redis_url:
        return RedisSink(redis_url, key=results_key)
    return NullSink()
