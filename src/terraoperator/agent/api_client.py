# agent/api_client.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urljoin

from .models import ExecutionMode, ExecutionRequest, ExecutionResult


class APIError(Exception):
    """The agent could not be reached, or answered with something that is not a result."""
    pass


def _decode(raw: bytes) -> Dict[str, Any]:
    text = raw.decode("utf-8")
    if not text:
        return {}
    body = json.loads(text)
    if not isinstance(body, dict):
        raise ValueError(f"expected a JSON object, got {type(body).__name__}")
    return body


class APIClient:
    """
    Submits execution requests to a running agent (`terraoperator serve`).

    Used by `run --api` and by execution Jobs that have AGENT_URL set.
    """

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def _url(self, path: str) -> str:
        return urljoin(self.base_url + "/", path.lstrip("/"))

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Tuple[int, Dict[str, Any]]:
        """
        Send one request and return (status, JSON body).

        Failed executions come back as 4xx/5xx with a result body; those are
        returned like any other answer. Only transport problems and bodies
        that are not JSON objects raise.

        Raises:
            APIError
        """
        req = urllib.request.Request(
            self._url(path),
            data=None if payload is None else json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            method=method,
        )
        try:
            with urllib.request.urlopen(req) as response:
                return response.status, _decode(response.read())
        except urllib.error.HTTPError as e:
            raw = e.read() if e.fp else b""
            try:
                return e.code, _decode(raw)
            except ValueError:
                raise APIError(f"{method} {path} answered {e.code} {e.reason}: {raw[:200]!r}")
        except urllib.error.URLError as e:
            raise APIError(f"cannot reach agent at {self.base_url}: {e.reason}")
        except ValueError as e:
            raise APIError(f"{method} {path} returned an unreadable body: {e}")

    def execute(
        self,
        request: ExecutionRequest,
        mode: ExecutionMode = ExecutionMode.PLAN,
    ) -> ExecutionResult:
        mode = ExecutionMode(mode)
        _status, body = self._request("POST", f"/{mode.value}", request.to_dict())
        try:
            return ExecutionResult.from_dict(body)
        except (TypeError, ValueError) as e:
            raise APIError(f"agent answered with something that is not a result: {e}")

    def healthy(self) -> bool:
        try:
            status, _ = self._request("GET", "/healthz")
        except APIError:
            return False
        return status == 200
