from fastapi import FastAPI, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
import logging
import json
import time
import uuid
import redis
from optimizer_intelligence.config import get_settings
from optimizer_intelligence.errors import PipelineError
from optimizer_intelligence.infrastructure import db
from optimizer_intelligence.infrastructure.metrics import registry, REQUESTS, LATENCY
from optimizer_intelligence.services import build_services
from optimizer_intelligence.api.telemetry import router as telemetry_router
from optimizer_intelligence.api.intelligence import router as intelligence_router
from optimizer_intelligence.api.approval import router as approval_router
from optimizer_intelligence.api.apps import router as apps_router

app = FastAPI(title="Optimizer Intelligence API", version="0.1.0")
app.include_router(telemetry_router)
app.include_router(intelligence_router)
app.include_router(approval_router)
app.include_router(apps_router)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    cid = getattr(request.state, "correlation_id", "n/a")
    level = logging.ERROR if exc.http_status >= 500 else logging.INFO
    logging.getLogger("app").log(level, json.dumps({
        "event": "pipeline_error",
        "path": request.url.path,
        "code": exc.code,
        "detail": exc.message,
        "correlation_id": cid,
    }))
    body = exc.to_dict()
    body["correlation_id"] = cid
    return Response(content=json.dumps(body, default=str), media_type="application/json", status_code=exc.http_status)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    cid = getattr(request.state, "correlation_id", "n/a")
    logging.getLogger("app").error(json.dumps({
        "event": "error",
        "path": request.url.path,
        "detail": str(exc),
        "correlation_id": cid,
        "type": exc.__class__.__name__,
    }))
    return Response(content=json.dumps({"error": "internal_error", "correlation_id": cid}), media_type="application/json", status_code=500)


@app.middleware("http")
async def request_metrics(request: Request, call_next):
    request.state.correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex
    endpoint = request.url.path
    start = time.time()
    response = await call_next(request)
    REQUESTS.labels(endpoint=endpoint).inc()
    LATENCY.labels(endpoint=endpoint).observe(time.time() - start)
    response.headers["X-Correlation-ID"] = request.state.correlation_id
    return response


@app.on_event("startup")
def startup():
    settings = get_settings()
    # Configure structured logger once
    logger = logging.getLogger("app")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(message)s'))  # already JSON
        logger.setLevel(settings.log_level.upper())
        logger.addHandler(handler)
    if settings.migrate_on_start:
        import subprocess
        try:
            subprocess.run(["alembic", "upgrade", "head"], check=True)
        except (OSError, subprocess.CalledProcessError):
            logger.warning(json.dumps({"event": "migration_failed", "detail": "startup alembic upgrade failed"}))
    app.state.services = build_services(settings=settings)
    logger.info(json.dumps({"event": "startup", "environment": settings.environment}))


@app.on_event("shutdown")
def shutdown():
    services = getattr(app.state, "services", None)
    if services is not None:
        services.close()
        app.state.services = None


@app.get("/health")
def health():
    return {"db": db.healthcheck(), "status": "ok"}


@app.get("/ready")
def readiness():
    """Readiness probe that ensures DB and Redis are reachable."""
    settings = get_settings()
    db_ok = db.healthcheck()
    redis_ok = True
    try:
        redis.Redis.from_url(settings.redis_url, socket_connect_timeout=1).ping()
    except redis.RedisError:
        redis_ok = False
    status = db_ok and redis_ok
    return {"status": "ok" if status else "degraded", "db": db_ok, "redis": redis_ok}


@app.get("/metrics")
def metrics():
    data = generate_latest(registry)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
