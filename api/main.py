import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from action_routes import setup_action_routes
from app_services import AppServices, build_services
from config_validator import ConfigValidator, describe, load_settings
from query_routes import rate_limit_handler, setup_query_routes
from structured_logging import setup_logging
from telemetry import CorrelationMiddleware

APP_NAME = "azops-copilot-api"

logger = logging.getLogger("azops")


def _configure_audit_logger():
    audit_logger = logging.getLogger("audit")
    if not audit_logger.handlers:
        audit_handler = logging.StreamHandler()
        audit_handler.setFormatter(logging.Formatter('%(asctime)s - AUDIT - %(message)s'))
        audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """
    Build the API.  Without ``services`` the environment is validated and
    the real Azure / completion clients are wired from it.
    """
    if services is None:
        load_dotenv()
        ConfigValidator.validate_and_exit_on_error()
        settings = load_settings()
        setup_logging(
            log_level=settings.log_level,
            json_logs=settings.json_logs,
            log_file=settings.log_file or None,
        )
        services = build_services(settings)
    settings = services.settings
    _configure_audit_logger()

    app = FastAPI(title=APP_NAME)
    started_at = time.time()

    # Rate limiting setup
    app.state.limiter = services.limiter
    app.state.services = services
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

    # Correlation ids + timing (added first so it wraps everything but CORS)
    app.add_middleware(CorrelationMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Correlation-ID"],
        expose_headers=["X-Correlation-ID", "Retry-After"],
    )

    setup_query_routes(app, services)
    setup_action_routes(app, services)

    @app.get("/health")
    @services.limiter.limit("60/minute")
    async def health(request: Request):
        breakers = {name: b.snapshot()["state"] for name, b in services.breakers.items()}
        return JSONResponse({
            "status": "ok",
            "service": APP_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptimeSeconds": round(time.time() - started_at, 1),
            "breakers": breakers,
            "cacheSize": len(services.cache),
            "config": describe(settings),
        })

    @app.get("/api/metrics")
    @services.limiter.limit("30/minute")
    async def get_metrics(
        request: Request,
        name: Optional[str] = Query(None, description="Substring of the metric name"),
        since: Optional[float] = Query(None, description="Epoch milliseconds lower bound"),
    ):
        """Recorded metrics (filtered) plus derived request statistics."""
        result = services.metrics.query(name=name, since=since)
        result["stats"] = services.metrics.stats()
        result["breakers"] = [b.snapshot() for b in services.breakers.values()]
        result["timestamp"] = datetime.now(timezone.utc).isoformat()
        return JSONResponse(result)

    logger.info("%s ready (backend=%s)", APP_NAME, settings.completion_backend)
    return app


def run():
    import uvicorn

    uvicorn.run(
        "main:create_app",
        factory=True,
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
    )


if __name__ == "__main__":
    run()
