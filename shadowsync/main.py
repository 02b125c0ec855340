"""
shadowsync - IoT hub device shadow synchronization with a delivery-tracked event log.

Features:
- Device provisioning, decommissioning and shadow drift reconciliation
- Tenant-scoped event log with retention and delivery tracking
- At-least-once event delivery with exponential backoff
- Structured logging, Prometheus metrics, liveness and readiness probes
"""
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from .config import get_settings
from .dependencies import SERVICE_NAME, VERSION, get_event_store, get_metrics, get_sink
from .logging import setup_logging, get_logger
from .api.errors import register_exception_handlers
from .api.router import router as events_router
from .api.devices_router import router as devices_router
from .api.integrations_router import router as integrations_router
from .middleware import CorrelationIdMiddleware, MetricsMiddleware
from .health import HealthChecker
from .services.sinks import WebhookSink
from .store.memory import InMemoryEventStore
from .store.redis_store import RedisEventStore

settings = get_settings()

setup_logging(json_output=settings.LOG_JSON, service_name=SERVICE_NAME)
logger = get_logger()

metrics = get_metrics()
health_checker = HealthChecker(get_event_store(), service_name=SERVICE_NAME, version=VERSION)

app = FastAPI(
    title="shadowsync",
    version=VERSION,
    description="Device shadow synchronization and delivery-tracked device events",
)

# added last runs first: correlation id is bound before metrics log the request
app.add_middleware(MetricsMiddleware, metrics=metrics)
app.add_middleware(CorrelationIdMiddleware)

register_exception_handlers(app)

app.include_router(events_router)
app.include_router(devices_router)
app.include_router(integrations_router)

metrics_app = make_asgi_app(registry=metrics.registry)
app.mount("/metrics", metrics_app)


@app.get("/health")
async def health():
    """Liveness probe."""
    logger.debug("health_check_liveness")
    return health_checker.liveness()


@app.get("/health/ready")
async def health_ready():
    """
    Readiness probe.

    Returns:
        200: Service is ready to handle traffic
        503: Service is not ready
    """
    logger.debug("health_check_readiness")
    result = await health_checker.readiness()
    status_code = 200 if result["status"] == "ready" else 503
    return JSONResponse(result, status_code=status_code)


@app.on_event("startup")
async def startup_event():
    logger.info(
        "service_starting",
        version=VERSION,
        env=settings.ENV,
        store_backend=settings.STORE_BACKEND,
        webhook_configured=bool(settings.WEBHOOK_URL),
    )
    store = get_event_store()
    if isinstance(store, RedisEventStore) and settings.EVENT_SWEEP_INTERVAL_SECONDS:
        store.start_sweep(settings.EVENT_SWEEP_INTERVAL_SECONDS)


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("service_stopping")
    store = get_event_store()
    if isinstance(store, InMemoryEventStore):
        store.shutdown()
    elif isinstance(store, RedisEventStore):
        await store.stop_sweep()
        store.close()
    sink = get_sink()
    if isinstance(sink, WebhookSink):
        await sink.aclose()
    metrics.app_up.labels(service=SERVICE_NAME, version=VERSION).set(0)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "shadowsync.main:app",
        host="0.0.0.0",
        port=settings.SERVICE_PORT,
    )
