import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import pydantic
from starlette.concurrency import run_in_threadpool

from .. import __version__
from ..config.settings import configure_logging, get_settings
from ..database.connection import health_check as database_health_check
from ..errors import IndexerError, InvalidState, NotFound, UpstreamFailure
from ..models.events import WebhookBatch
from ..models.types import AuditEventType, AuditStatus
from ..pipeline import IndexerServices, build_services

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NotFound: 404,
    InvalidState: 409,
    UpstreamFailure: 502,
}


class WebhookResponse(BaseModel):
    status: str
    received: int
    inserted: int
    skipped: int
    failed: int
    timestamp: str


class QueryRequest(BaseModel):
    sql: str


def _status_for(error: IndexerError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    # ValidationError and UnsafeInput
    return 400


def get_services(request: Request) -> IndexerServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Indexer is starting up")
    return services


def create_app(services: Optional[IndexerServices] = None) -> FastAPI:
    """Build the FastAPI app. Services are created on startup unless injected."""
    app = FastAPI(title="Solana Indexer", version=__version__)
    app.state.services = services

    @app.on_event("startup")
    async def startup_event():
        if app.state.services is None:
            settings = get_settings()
            configure_logging(settings)
            app.state.services = build_services(settings)
            app.state.services.db.create_all_tables()
        logger.info("Ready to receive webhooks at /api/webhook/{owner_id}")

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.services is not None:
            app.state.services.close()
        logger.info("Indexer shutdown complete")

    @app.exception_handler(IndexerError)
    async def indexer_error_handler(request: Request, exc: IndexerError):
        return JSONResponse(status_code=_status_for(exc), content={"detail": exc.to_dict()})

    @app.get("/")
    async def root():
        return {"message": "Solana indexer is running", "version": __version__}

    @app.get("/health")
    def health(services: IndexerServices = Depends(get_services)):
        db_status = database_health_check(services.db)
        return {
            "status": db_status["status"],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": db_status,
            "target_pools": len(services.target_pool.pooled_owners()),
        }

    # Webhook delivery

    @app.post("/api/webhook/{owner_id}", response_model=WebhookResponse)
    async def receive_webhook(owner_id: str, request: Request, services: IndexerServices = Depends(get_services)):
        """Ingest one Helius delivery. Per-event failures go to the audit log, not the status code."""
        try:
            owner = int(owner_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid owner ID")

        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.error(f"Invalid JSON payload for owner {owner}")
            raise HTTPException(status_code=400, detail="Invalid JSON payload")

        try:
            batch = WebhookBatch.from_payload(payload)
        except pydantic.ValidationError:
            raise HTTPException(status_code=400, detail="Malformed webhook batch")

        report = await run_in_threadpool(services.ingestor.ingest, owner, batch.transactions)
        return WebhookResponse(
            status="aborted" if report.aborted_reason else "processed",
            received=report.received,
            inserted=report.inserted,
            skipped=report.skipped,
            failed=report.failed,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    # Target connections

    @app.get("/api/owners/{owner_id}/connections")
    def list_connections(owner_id: int, services: IndexerServices = Depends(get_services)):
        return {"connections": [c.to_public_dict() for c in services.connections.list(owner_id)]}

    @app.post("/api/owners/{owner_id}/connections", status_code=201)
    def create_connection(owner_id: int, body: Dict[str, Any] = Body(...), services: IndexerServices = Depends(get_services)):
        connection = services.connections.create(owner_id, body)
        return {"connection": connection.to_public_dict()}

    @app.post("/api/owners/{owner_id}/connections/test")
    def test_connection(owner_id: int, body: Dict[str, Any] = Body(...), services: IndexerServices = Depends(get_services)):
        return services.connections.test_connectivity(body).to_dict()

    @app.get("/api/owners/{owner_id}/connections/{connection_id}")
    def get_connection(owner_id: int, connection_id: int, services: IndexerServices = Depends(get_services)):
        return {"connection": services.connections.get(owner_id, connection_id).to_public_dict()}

    @app.patch("/api/owners/{owner_id}/connections/{connection_id}")
    def update_connection(
        owner_id: int,
        connection_id: int,
        body: Dict[str, Any] = Body(...),
        services: IndexerServices = Depends(get_services)
    ):
        connection = services.connections.update(owner_id, connection_id, body)
        return {"connection": connection.to_public_dict()}

    @app.post("/api/owners/{owner_id}/connections/{connection_id}/activate")
    def activate_connection(owner_id: int, connection_id: int, services: IndexerServices = Depends(get_services)):
        return {"connection": services.connections.set_active(owner_id, connection_id).to_public_dict()}

    @app.delete("/api/owners/{owner_id}/connections/{connection_id}")
    def delete_connection(owner_id: int, connection_id: int, services: IndexerServices = Depends(get_services)):
        services.connections.delete(owner_id, connection_id)
        return {"message": "Database connection deleted successfully"}

    # Indexing configurations

    @app.get("/api/owners/{owner_id}/configs")
    def list_configs(owner_id: int, services: IndexerServices = Depends(get_services)):
        return {"configs": [c.to_public_dict() for c in services.configs.list(owner_id)]}

    @app.post("/api/owners/{owner_id}/configs", status_code=201)
    def create_config(owner_id: int, body: Dict[str, Any] = Body(...), services: IndexerServices = Depends(get_services)):
        config = services.configs.create(
            owner_id,
            body.get("name", ""),
            body.get("enabled_types") or [],
            body.get("custom_addresses") or [],
        )
        return {"config": config.to_public_dict()}

    @app.get("/api/owners/{owner_id}/configs/{config_id}")
    def get_config(owner_id: int, config_id: int, services: IndexerServices = Depends(get_services)):
        return {"config": services.configs.get(owner_id, config_id).to_public_dict()}

    @app.patch("/api/owners/{owner_id}/configs/{config_id}")
    def update_config(
        owner_id: int,
        config_id: int,
        body: Dict[str, Any] = Body(...),
        services: IndexerServices = Depends(get_services)
    ):
        return {"config": services.configs.update(owner_id, config_id, body).to_public_dict()}

    @app.delete("/api/owners/{owner_id}/configs/{config_id}")
    def delete_config(owner_id: int, config_id: int, services: IndexerServices = Depends(get_services)):
        services.configs.delete(owner_id, config_id)
        return {"message": "Indexing configuration deleted successfully"}

    # Activity log

    @app.get("/api/owners/{owner_id}/logs")
    def list_logs(
        owner_id: int,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        event_type: Optional[AuditEventType] = None,
        status: Optional[AuditStatus] = None,
        services: IndexerServices = Depends(get_services)
    ):
        records, total = services.audit.list(owner_id, event_type=event_type, status=status, limit=limit, offset=offset)
        return {
            "logs": [r.to_public_dict() for r in records],
            "pagination": {"total": total, "limit": limit, "offset": offset},
        }

    @app.get("/api/owners/{owner_id}/logs/recent")
    def recent_logs(owner_id: int, limit: int = Query(10, ge=1, le=100), services: IndexerServices = Depends(get_services)):
        return {"logs": [r.to_public_dict() for r in services.audit.recent(owner_id, limit)]}

    @app.get("/api/owners/{owner_id}/logs/summary")
    def log_summary(owner_id: int, services: IndexerServices = Depends(get_services)):
        return {"summary": services.audit.event_summary(owner_id)}

    @app.get("/api/owners/{owner_id}/logs/daily")
    def log_daily(owner_id: int, days: int = Query(7, ge=1, le=90), services: IndexerServices = Depends(get_services)):
        return {"metrics": services.audit.daily_metrics(owner_id, days)}

    # Data explorer

    @app.post("/api/owners/{owner_id}/query")
    def run_query(owner_id: int, body: QueryRequest, services: IndexerServices = Depends(get_services)):
        result = services.queries.execute(owner_id, body.sql)
        # Target rows can hold arbitrary types (Decimal, datetime)
        return json.loads(json.dumps(result, default=str))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
