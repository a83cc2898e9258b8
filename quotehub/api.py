"""Quote search and admin HTTP API"""

import asyncio
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from quotehub import __version__
from quotehub.core.error_handler import (
    AuditError,
    NoEligibleProviders,
    NoQuotesAvailable,
    ProviderNotFound,
    QuoteValidationError,
)
from quotehub.core.logger import get_logger
from quotehub.modules.quote.orchestrator import Orchestrator, build_orchestrator

logger = get_logger(__name__)

ALLOWED_ORIGINS = os.getenv(
    "QUOTEHUB_CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000"
).split(",")


def _error(status_code: int, kind: str, message: str, **extra: Any) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"kind": kind, "message": message, **extra})


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """
    Build the API application

    Args:
        orchestrator: engine to serve; built from the app config on first use when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        checks = None
        engine = app.state.orchestrator
        interval = engine.engine.health_check_interval_seconds if engine is not None else None
        if interval:
            checks = asyncio.create_task(engine.run_health_checks(interval))
            logger.info(f"Provider health checks every {interval:g}s")
        yield
        if checks is not None:
            checks.cancel()
            try:
                await checks
            except asyncio.CancelledError:
                pass
        engine = app.state.orchestrator
        if engine is not None:
            await engine.aclose()

    app = FastAPI(title="quotehub API", version=__version__, lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in ALLOWED_ORIGINS],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )

    def get_orchestrator(request: Request) -> Orchestrator:
        if request.app.state.orchestrator is None:
            request.app.state.orchestrator = build_orchestrator()
        return request.app.state.orchestrator

    @app.get("/")
    async def root():
        return {"message": "quotehub API", "version": __version__}

    @app.get("/api/health")
    async def health_check(engine: Orchestrator = Depends(get_orchestrator)):
        providers = engine.registry.all()
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "providers": {
                "total": len(providers),
                "active": sum(1 for p in providers if p.is_active),
                "mock": sum(1 for p in providers if p.mock_mode),
                "circuits_open": sum(
                    1 for p in providers if engine.registry.breaker(p.id).snapshot()["state"] != "closed"
                ),
            },
        }

    @app.post("/api/quotes/search")
    async def search_quotes(
        payload: Dict[str, Any] = Body(...),
        engine: Orchestrator = Depends(get_orchestrator),
    ):
        criteria = payload.get("criteria") if isinstance(payload.get("criteria"), dict) else payload
        user_id = payload.get("user_id") or payload.get("userId")
        try:
            result = await engine.execute(criteria, user_id=user_id)
        except QuoteValidationError as e:
            raise _error(400, "validation_error", e.message, fields=e.fields)
        except NoEligibleProviders as e:
            raise _error(503, "no_eligible_providers", e.message, coverage_type=e.coverage_type)
        except NoQuotesAvailable as e:
            raise _error(503, "no_quotes_available", e.message, request_id=e.request_id, errors=e.errors)
        except AuditError as e:
            logger.error(f"Quote search aborted by audit failure: {e}")
            raise _error(500, "audit_error", "audit trail unavailable")
        return {"success": True, "data": result.to_dict()}

    @app.get("/api/admin/external-quote-requests")
    async def list_quote_requests(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        status: Optional[str] = Query(None, pattern="^(pending|success|error)$"),
        engine: Orchestrator = Depends(get_orchestrator),
    ):
        listing = await engine.audit.list_requests(page=page, limit=limit, status=status)
        return {
            "success": True,
            "data": [r.to_dict() for r in listing["requests"]],
            "pagination": listing["pagination"],
        }

    @app.get("/api/admin/external-quote-requests/{request_id}")
    async def get_quote_request(request_id: str, engine: Orchestrator = Depends(get_orchestrator)):
        record = await engine.audit.get_request(request_id)
        if record is None:
            raise _error(404, "not_found", f"Request not found: {request_id}")
        return {"success": True, "data": record.to_dict()}

    @app.get("/api/admin/provider-configs")
    async def list_provider_configs(engine: Orchestrator = Depends(get_orchestrator)):
        return {"success": True, "data": [p.public_dict() for p in engine.registry.all()]}

    @app.post("/api/admin/provider-configs", status_code=201)
    async def create_provider_config(
        payload: Dict[str, Any] = Body(...),
        engine: Orchestrator = Depends(get_orchestrator),
    ):
        provider_id = payload.get("id")
        if provider_id:
            try:
                engine.registry.get(provider_id)
                raise _error(409, "conflict", f"Provider already exists: {provider_id}")
            except ProviderNotFound:
                pass
        try:
            created = engine.registry.upsert(payload)
        except QuoteValidationError as e:
            raise _error(400, "validation_error", e.message, fields=e.fields)
        return {"success": True, "data": created.public_dict()}

    @app.put("/api/admin/provider-configs/{provider_id}")
    async def update_provider_config(
        provider_id: str,
        payload: Dict[str, Any] = Body(...),
        engine: Orchestrator = Depends(get_orchestrator),
    ):
        try:
            updated = engine.registry.update(provider_id, payload)
        except ProviderNotFound as e:
            raise _error(404, "not_found", e.message)
        except QuoteValidationError as e:
            raise _error(400, "validation_error", e.message, fields=e.fields)
        return {"success": True, "data": updated.public_dict()}

    @app.post("/api/admin/provider-configs/{provider_id}/test")
    async def test_provider_config(provider_id: str, engine: Orchestrator = Depends(get_orchestrator)):
        try:
            result = await engine.test_provider(provider_id)
        except ProviderNotFound as e:
            raise _error(404, "not_found", e.message)
        return {"success": True, "data": result}

    @app.get("/api/admin/provider-stats")
    async def get_provider_stats(engine: Orchestrator = Depends(get_orchestrator)):
        stats = {s.provider_id: s for s in await engine.audit.get_stats()}
        for provider in engine.registry.all():
            if provider.id not in stats:
                stats[provider.id] = await engine.audit.get_provider_stats(provider.id)
        return {"success": True, "data": [stats[pid].to_dict() for pid in sorted(stats)]}

    @app.get("/api/admin/provider-health")
    async def get_provider_health(engine: Orchestrator = Depends(get_orchestrator)):
        data = []
        for provider in engine.registry.all():
            data.append({
                "provider_id": provider.id,
                "is_active": provider.is_active,
                "circuit": engine.registry.breaker(provider.id).snapshot(),
                "last_check": engine.last_health.get(provider.id),
            })
        return {"success": True, "data": data}

    @app.post("/api/admin/provider-health/check")
    async def run_provider_health_check(engine: Orchestrator = Depends(get_orchestrator)):
        return {"success": True, "data": await engine.check_providers()}

    @app.get("/api/admin/stuck-requests")
    async def list_stuck_requests(
        older_than_seconds: Optional[float] = Query(None, gt=0),
        engine: Orchestrator = Depends(get_orchestrator),
    ):
        threshold = older_than_seconds or engine.engine.stuck_threshold_seconds
        stuck = await engine.audit.list_stuck_requests(threshold)
        return {
            "success": True,
            "data": [r.to_dict() for r in stuck],
            "older_than_seconds": threshold,
        }

    @app.post("/api/admin/stuck-requests/reconcile")
    async def reconcile_stuck_requests(
        older_than_seconds: Optional[float] = Query(None, gt=0),
        engine: Orchestrator = Depends(get_orchestrator),
    ):
        threshold = older_than_seconds or engine.engine.stuck_threshold_seconds
        reconciled = await engine.audit.reconcile_stuck_requests(threshold)
        return {"success": True, "data": {"reconciled": reconciled, "older_than_seconds": threshold}}

    return app


app = create_app()
