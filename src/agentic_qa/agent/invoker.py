"""Tool dispatch with validation, credentials, timeouts and bounded retries."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, MutableMapping
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from agentic_qa.agent.credentials import TokenCache
from agentic_qa.agent.registry import ToolSpec
from agentic_qa.config import ToolConfig
from agentic_qa.errors import CredentialError
from agentic_qa.types import Citation, ToolErr, ToolErrorKind, ToolOk, ToolResult, ToolTrace, cache_key

logger = structlog.get_logger(__name__)

ToolCache = MutableMapping[str, ToolResult]


@dataclass(slots=True)
class _BreakerState:
    failures: int = 0
    opened_at: float | None = None


class CircuitBreaker:
    """Per-endpoint breaker: opens after consecutive failures, half-opens after a cooldown."""

    def __init__(self, failure_threshold: int = 5, reset_seconds: float = 30.0) -> None:
        self.failure_threshold = failure_threshold
        self.reset_seconds = reset_seconds
        self._states: dict[str, _BreakerState] = {}

    def allow(self, endpoint: str) -> bool:
        state = self._states.get(endpoint)
        if state is None or state.opened_at is None:
            return True
        # Half-open: let one trial call through once the cooldown has elapsed.
        return time.monotonic() - state.opened_at >= self.reset_seconds

    def record_success(self, endpoint: str) -> None:
        self._states.pop(endpoint, None)

    def record_failure(self, endpoint: str) -> None:
        state = self._states.setdefault(endpoint, _BreakerState())
        state.failures += 1
        if state.failures >= self.failure_threshold:
            state.opened_at = time.monotonic()
            logger.warning("circuit_opened", endpoint=endpoint, failures=state.failures)


class _Transient(Exception):
    """A failure worth retrying (transport error, 429, 5xx)."""


class ToolInvoker:
    """Calls external tool endpoints and always answers with a `ToolResult`.

    Endpoint contract: ``POST {"parameters": {...}}`` with a bearer token;
    the response body is ``{"result": ..., "citations": [...], "error": ...}``
    where exactly one of ``result`` / ``error`` is non-null.
    """

    def __init__(
        self,
        token_cache: TokenCache,
        *,
        client: httpx.AsyncClient | None = None,
        config: ToolConfig | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.token_cache = token_cache
        self.config = config or ToolConfig()
        self.client = client or httpx.AsyncClient()
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=self.config.breaker_failure_threshold,
            reset_seconds=self.config.breaker_reset_seconds,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def invoke(
        self,
        spec: ToolSpec,
        parameters: dict[str, Any],
        cache: ToolCache,
        *,
        timeout: float | None = None,
        observer: Callable[[ToolTrace], None] | None = None,
    ) -> ToolResult:
        """Validate, deduplicate and dispatch one tool call.

        `cache` is the session's tool-result cache for the current turn; a hit
        returns without any network call, a success is stored before
        returning. `timeout` can only shorten the tool's own timeout.
        """

        start = time.perf_counter()
        cached = False
        try:
            validated = spec.validate_parameters(parameters).model_dump(mode="json")
        except ValidationError as exc:
            result: ToolResult = ToolErr(kind=ToolErrorKind.VALIDATION, message=describe_validation_error(exc))
        else:
            key = cache_key(spec.name, validated)
            hit = cache.get(key)
            if hit is not None:
                result, cached = hit, True
            else:
                result = await self._dispatch_safely(spec, validated, timeout)
                if isinstance(result, ToolOk):
                    cache[key] = result

        latency_ms = (time.perf_counter() - start) * 1000.0
        logger.info(
            "tool_invoked",
            tool=spec.name,
            status=result.status,
            error_kind=getattr(result, "kind", None),
            cached=cached,
            latency_ms=round(latency_ms, 2),
        )
        if observer is not None:
            observer(
                ToolTrace(
                    name=spec.name,
                    input_payload=parameters,
                    output_preview=result.model_dump_json()[:320],
                    latency_ms=latency_ms,
                    status=result.status if isinstance(result, ToolOk) else result.kind.value,
                    cached=cached,
                )
            )
        return result

    async def _dispatch_safely(self, spec: ToolSpec, parameters: dict[str, Any], timeout: float | None) -> ToolResult:
        try:
            return await self._dispatch(spec, parameters, timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("tool_dispatch_crashed", tool=spec.name)
            return ToolErr(kind=ToolErrorKind.TOOL_ERROR, message=f"tool dispatch failed: {exc}")

    async def _dispatch(self, spec: ToolSpec, parameters: dict[str, Any], timeout: float | None) -> ToolResult:
        endpoint = spec.endpoint
        if not self.breaker.allow(endpoint):
            return ToolErr(kind=ToolErrorKind.UNAVAILABLE, message=f"circuit open for {spec.name}")

        budget = spec.timeout_seconds if timeout is None else max(0.0, min(spec.timeout_seconds, timeout))
        loop = asyncio.get_running_loop()
        # One budget for the whole call: attempts and backoff sleeps share it.
        deadline = loop.time() + budget
        last_error = ""
        for attempt in range(1, self.config.max_attempts + 1):
            try:
                token = await self.token_cache.token_for(spec.principal, endpoint)
            except CredentialError as exc:
                return ToolErr(kind=ToolErrorKind.UNAUTHORIZED, message=exc.message)

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                response = await asyncio.wait_for(
                    self.client.post(
                        endpoint,
                        json={"parameters": parameters},
                        headers={"Authorization": f"Bearer {token}"},
                        timeout=remaining,
                    ),
                    timeout=remaining,
                )
                return self._interpret(spec, response)
            except (asyncio.TimeoutError, httpx.TimeoutException):
                break
            except (_Transient, httpx.TransportError) as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.warning("tool_transient_failure", tool=spec.name, attempt=attempt, error=last_error)
                if attempt < self.config.max_attempts:
                    await asyncio.sleep(min(self._backoff(attempt), max(0.0, deadline - loop.time())))
        else:
            self.breaker.record_failure(endpoint)
            return ToolErr(
                kind=ToolErrorKind.UNAVAILABLE,
                message=f"{spec.name} unavailable after {self.config.max_attempts} attempts: {last_error}",
            )

        self.breaker.record_failure(endpoint)
        detail = f" (last error: {last_error})" if last_error else ""
        return ToolErr(
            kind=ToolErrorKind.TIMEOUT,
            message=f"{spec.name} did not answer within {budget:.1f}s{detail}",
        )

    def _interpret(self, spec: ToolSpec, response: httpx.Response) -> ToolResult:
        status = response.status_code
        if status in (401, 403):
            self.token_cache.evict(spec.principal, spec.endpoint)
            return ToolErr(kind=ToolErrorKind.UNAUTHORIZED, message=f"{spec.name} rejected credentials ({status})")
        if status == 429 or status >= 500:
            raise _Transient(f"HTTP {status}")
        if status >= 400:
            self.breaker.record_success(spec.endpoint)
            return ToolErr(kind=ToolErrorKind.REJECTED, message=f"{spec.name} rejected the request ({status})")

        self.breaker.record_success(spec.endpoint)
        try:
            body = response.json()
        except ValueError:
            return ToolErr(kind=ToolErrorKind.TOOL_ERROR, message=f"{spec.name} returned a non-JSON body")
        return normalize_tool_response(body)

    def _backoff(self, attempt: int) -> float:
        return min(self.config.backoff_base_seconds * (2 ** (attempt - 1)), self.config.backoff_max_seconds)


def normalize_tool_response(body: Any) -> ToolResult:
    """Map an endpoint response body onto `ToolOk` / `ToolErr`."""

    if not isinstance(body, dict):
        return ToolErr(kind=ToolErrorKind.TOOL_ERROR, message="malformed tool response")
    result = body.get("result")
    error = body.get("error")
    if (result is None) == (error is None):
        return ToolErr(kind=ToolErrorKind.TOOL_ERROR, message="tool response must set exactly one of result/error")
    if error is not None:
        return ToolErr(kind=ToolErrorKind.TOOL_ERROR, message=str(error))
    try:
        citations = [Citation.model_validate(item) for item in body.get("citations") or []]
    except ValidationError:
        return ToolErr(kind=ToolErrorKind.TOOL_ERROR, message="malformed citations in tool response")
    return ToolOk(result=result, citations=citations)


def describe_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(problems)
