"""
query_routes.py — Chat query endpoint (the request orchestrator).

Endpoints:
  POST /api/query              — answer a chat turn with live Azure context
  *    /api/query              — any other method → 405 envelope
  GET  /api/query/suggestions  — quick-start suggestion chips

Flow of POST /api/query:
  1. Admission   — slowapi fixed-window limit per client IP (429 + Retry-After)
  2. Validation  — messages array, last turn from the user, action allow-list
  3. Intent      — keyword classifier on the newest user message
  4. Data fetch  — DataFetcher under a hard timeout; failures degrade to an
                   error envelope instead of aborting
  5. Completion  — completion breaker → retry executor → backend
  6. Approval    — mutating verbs in the answer set requiresApproval; this
                   endpoint never executes an action itself
  7. Response    — message, azureData, intent, approval, correlation id, metrics
"""

import asyncio
import logging
import math
import time
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from slowapi.errors import RateLimitExceeded

from action_extraction import extract_action
from completion_llm import CompletionResult
from errors import ErrorKind, InvalidRequestError
from prompt_builder import build_messages
from query_intents import Intent, detect_intent, get_suggestion_chips
from responses import error_body, error_response, json_response
from retry_policy import execute_with_retry
from telemetry import request_correlation_id, track_api_call

logger = logging.getLogger("azops.query")

ACTION_TYPES = ("scale", "restart", "stop", "start")


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = Field(..., max_length=8000)


class ActionPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str


class QueryRequest(BaseModel):
    messages: List[ChatMessage]
    action: Optional[ActionPayload] = None


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------

def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg', 'invalid value')}" if loc else err.get("msg", "invalid value")


def parse_query_request(payload: Any) -> QueryRequest:
    """Validate the raw JSON body; raises InvalidRequestError naming the bad field."""
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    messages = payload.get("messages")
    if not isinstance(messages, list):
        raise InvalidRequestError("messages must be an array of {role, content} objects")
    if not messages:
        raise InvalidRequestError("messages must contain at least one message")

    action = payload.get("action")
    if action is not None:
        if not isinstance(action, dict) or action.get("type") not in ACTION_TYPES:
            raise InvalidRequestError(f"action.type must be one of {', '.join(ACTION_TYPES)}")

    try:
        request = QueryRequest.model_validate(payload)
    except ValidationError as exc:
        raise InvalidRequestError(_first_error(exc)) from exc

    if request.messages[-1].role != "user":
        raise InvalidRequestError("the last message must have role 'user'")
    if not request.messages[-1].content.strip():
        raise InvalidRequestError("the last message must have non-empty content")
    return request


class QueryHandler:
    """One instance per app; holds only process-wide service handles."""

    def __init__(self, services):
        self.settings = services.settings
        self.metrics = services.metrics
        self.fetcher = services.fetcher
        self.completion = services.completion
        self.completion_breaker = services.breakers["completion"]
        self._sleep = services.sleep

    async def handle(self, payload: Any, correlation_id: str) -> JSONResponse:
        started = time.perf_counter()
        intent = Intent.UNKNOWN
        try:
            try:
                request = parse_query_request(payload)
            except InvalidRequestError as exc:
                self.metrics.record("validation_failed", 1, reason=exc.message,
                                    correlation_id=correlation_id)
                logger.info("Rejected query: %s", exc.message)
                return json_response(
                    400, error_body(ErrorKind.INVALID_REQUEST, exc.message, correlation_id),
                    correlation_id,
                )

            history = [m.model_dump() for m in request.messages[:-1]]
            latest = request.messages[-1].content

            intent = detect_intent(latest)
            self.metrics.record("request_received", 1, intent=intent.value,
                                message_count=len(request.messages),
                                correlation_id=correlation_id)
            logger.info("Query intent=%s messages=%d", intent.value, len(request.messages),
                        extra={"intent": intent.value})

            envelope = None
            if intent is not Intent.UNKNOWN:
                envelope = await self.fetcher.fetch_for_intent(
                    intent, timeout=self.settings.data_fetch_timeout,
                )

            messages = build_messages(
                history, latest, envelope, intent,
                redact=self.settings.redact_sensitive and self.completion.is_external,
            )
            result = await self._complete(messages)

            requires_approval, action = extract_action(result.content, intent)
            if requires_approval:
                logger.info("Answer proposes a %s action; approval required", action["operation"])

            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            self.metrics.record("request_completed", duration_ms, intent=intent.value,
                                has_data=envelope is not None, duration_ms=duration_ms,
                                correlation_id=correlation_id)
            return json_response(200, {
                "message": result.content,
                "azureData": envelope,
                "intent": intent.value,
                "requiresApproval": requires_approval,
                "action": action,
                "correlationId": correlation_id,
                "metrics": {
                    "durationMs": duration_ms,
                    "hasData": envelope is not None,
                    "backend": result.backend,
                    "tokens": result.tokens,
                },
            }, correlation_id)
        except Exception as exc:
            return error_response(exc, correlation_id, self.metrics, intent=intent.value)

    async def _complete(self, messages: List[Dict[str, str]]) -> CompletionResult:
        """Completion breaker around the retry executor around the backend call."""
        s = self.settings

        def on_retry(attempt: int, wait: float) -> None:
            self.metrics.record("completion_rate_limited", 1, attempt=attempt, wait=wait)

        async def call() -> CompletionResult:
            return await asyncio.to_thread(self.completion.complete, messages)

        return await track_api_call(
            self.metrics, self.completion_breaker, "completion", "chat",
            lambda: execute_with_retry(
                call,
                max_attempts=s.retry_max_attempts,
                initial_delay_ms=s.retry_initial_delay_ms,
                sleep=self._sleep,
                on_retry=on_retry,
            ),
        )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

def setup_query_routes(app: FastAPI, services) -> QueryHandler:
    """Register the query endpoints on ``app`` using ``services``."""
    limiter = services.limiter
    handler = QueryHandler(services)

    @app.post("/api/query")
    @limiter.limit(services.settings.query_rate_limit)
    async def query(request: Request):
        """Answer a chat turn (see module docstring for the flow)."""
        correlation_id = request_correlation_id(request)
        try:
            payload: Optional[Any] = await request.json()
        except ValueError:
            payload = None
        return await handler.handle(payload, correlation_id)

    @app.api_route("/api/query", methods=["GET", "PUT", "PATCH", "DELETE"],
                   include_in_schema=False)
    async def query_wrong_method(request: Request):
        correlation_id = request_correlation_id(request)
        services.metrics.record("invalid_method", 1, method=request.method,
                                correlation_id=correlation_id)
        response = json_response(
            405,
            error_body(ErrorKind.INVALID_REQUEST, "Method not allowed", correlation_id),
            correlation_id,
        )
        response.headers["Allow"] = "POST"
        return response

    @app.get("/api/query/suggestions")
    async def suggestions():
        """Return quick-start suggestion chips for the UI."""
        return {"suggestions": get_suggestion_chips()}

    return handler


def _retry_after_seconds(request: Request, exc: RateLimitExceeded) -> int:
    """Seconds until the client's fixed window resets."""
    current = getattr(request.state, "view_rate_limit", None)
    limiter = getattr(request.app.state, "limiter", None)
    if current is not None and limiter is not None:
        item, args = current
        reset_at, _remaining = limiter.limiter.get_window_stats(item, *args)
        return max(1, math.ceil(reset_at - time.time()))
    return max(1, exc.limit.limit.get_expiry())


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 envelope for admission rejections; replaces slowapi's default handler."""
    correlation_id = request_correlation_id(request)
    retry_after = _retry_after_seconds(request, exc)
    ip_address = request.client.host if request.client else "unknown"

    metrics = request.app.state.services.metrics
    metrics.record("rate_limit_exceeded", 1, ip=ip_address, path=request.url.path,
                   correlation_id=correlation_id)
    logger.warning("Rate limit exceeded for %s on %s", ip_address, request.url.path,
                   extra={"ip_address": ip_address, "endpoint": request.url.path})

    return json_response(
        429,
        error_body(
            ErrorKind.RATE_LIMIT,
            f"Too many requests. Please retry after {retry_after} seconds.",
            correlation_id,
            retry_after,
        ),
        correlation_id,
        retry_after,
    )
