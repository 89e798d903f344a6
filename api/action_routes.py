"""
Resource action endpoint

POST /api/resources/action executes a change the copilot proposed, but only
once the caller has explicitly approved it.  The query endpoint never calls
this; the UI does after showing the approval prompt.
"""
import asyncio
import logging
from typing import Any, Literal, Optional

from fastapi import FastAPI, Request
from pydantic import BaseModel, Field, ValidationError, model_validator

from errors import ErrorKind, InvalidRequestError
from responses import error_body, error_response, json_response
from telemetry import request_correlation_id, track_api_call

logger = logging.getLogger("azops.actions")

# Audit logging
audit_logger = logging.getLogger("audit")


class ResourceActionRequest(BaseModel):
    resourceId: str = Field(..., min_length=1)
    action: Literal["start", "stop", "restart", "scale"]
    size: Optional[str] = None
    approved: bool = False

    @model_validator(mode="after")
    def _size_for_scale(self):
        if self.action == "scale" and not (self.size and self.size.strip()):
            raise ValueError("size is required for the scale action")
        if not self.resourceId.startswith("/subscriptions/"):
            raise ValueError("resourceId must be a full Azure resource id")
        return self


def log_resource_action(action: str, resource_id: str, request: Request, outcome: str):
    audit_logger.info(
        f"{action} - Resource: {resource_id} - "
        f"IP: {request.client.host if request.client else 'unknown'} - Outcome: {outcome}"
    )


def parse_action_request(payload: Any) -> ResourceActionRequest:
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    try:
        return ResourceActionRequest.model_validate(payload)
    except ValidationError as exc:
        err = exc.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid value").removeprefix("Value error, ")
        raise InvalidRequestError(f"{loc}: {msg}" if loc else msg) from exc


def setup_action_routes(app: FastAPI, services):
    limiter = services.limiter
    metrics = services.metrics
    azure_breaker = services.breakers["azure"]

    async def run_action(body: ResourceActionRequest):
        client = services.azure
        if body.action == "scale":
            return await asyncio.to_thread(client.resize_vm, body.resourceId, body.size.strip())
        return await asyncio.to_thread(client.vm_power_action, body.resourceId, body.action)

    @app.post("/api/resources/action")
    @limiter.limit("10/minute")
    async def resource_action(request: Request):
        """Execute an approved start/stop/restart/scale on a virtual machine."""
        correlation_id = request_correlation_id(request)
        try:
            try:
                payload = await request.json()
            except ValueError:
                payload = None
            body = parse_action_request(payload)

            if not body.approved:
                log_resource_action(body.action, body.resourceId, request, "refused (not approved)")
                metrics.record("action_refused", 1, action=body.action)
                return json_response(
                    400,
                    error_body(ErrorKind.INVALID_REQUEST,
                               "Action requires explicit approval (approved=true)", correlation_id),
                    correlation_id,
                )

            await track_api_call(
                metrics, azure_breaker, "azure", f"action_{body.action}",
                lambda: run_action(body),
            )
            log_resource_action(body.action, body.resourceId, request, "accepted")
            return json_response(200, {
                "status": "accepted",
                "action": body.action,
                "resourceId": body.resourceId,
                "size": body.size,
                "correlationId": correlation_id,
            }, correlation_id)
        except Exception as exc:
            if not isinstance(exc, InvalidRequestError):
                logger.warning("Resource action failed: %s", exc)
            return error_response(exc, correlation_id, metrics, endpoint="resources_action")
