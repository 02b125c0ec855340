"""Process-wide service instances, injected into routes with Depends.

Tests swap any of them through ``app.dependency_overrides``.
"""
from functools import lru_cache
from .config import get_settings
from .integrations.models import Provider
from .integrations.persistence import IntegrationStore
from .metrics import Metrics
from .services.dispatcher import EventDispatcher
from .services.reconciler import ShadowReconciler
from .services.sinks import EventSink, WebhookSink
from .shadow.client import ShadowClient
from .shadow.memory import InMemoryShadowClient
from .store import EventStore, create_event_store

SERVICE_NAME = "shadowsync"
VERSION = "0.1.0"


@lru_cache(maxsize=1)
def get_metrics() -> Metrics:
    return Metrics(service_name=SERVICE_NAME, version=VERSION)


@lru_cache(maxsize=1)
def get_event_store() -> EventStore:
    return create_event_store(get_settings())


@lru_cache(maxsize=1)
def get_integration_store() -> IntegrationStore:
    return IntegrationStore()


@lru_cache(maxsize=1)
def get_shadow_clients() -> dict[Provider, ShadowClient]:
    # cloud protocol clients are provided by deployments; the bundled hub is in-memory
    return {provider: InMemoryShadowClient() for provider in Provider}


@lru_cache(maxsize=1)
def get_reconciler() -> ShadowReconciler:
    settings = get_settings()
    return ShadowReconciler(
        store=get_event_store(),
        integrations=get_integration_store(),
        clients=get_shadow_clients(),
        call_timeout=settings.SHADOW_CALL_TIMEOUT_SECONDS,
        metrics=get_metrics(),
    )


@lru_cache(maxsize=1)
def get_dispatcher() -> EventDispatcher:
    settings = get_settings()
    return EventDispatcher(
        store=get_event_store(),
        max_retries=settings.DELIVERY_MAX_RETRIES,
        backoff_base=settings.DELIVERY_BACKOFF_BASE_SECONDS,
        backoff_max=settings.DELIVERY_BACKOFF_MAX_SECONDS,
        batch_size=settings.DELIVERY_BATCH_SIZE,
        metrics=get_metrics(),
    )


@lru_cache(maxsize=1)
def get_sink() -> EventSink | None:
    """Webhook sink for WEBHOOK_URL, or None when no webhook is configured."""
    settings = get_settings()
    if not settings.WEBHOOK_URL:
        return None
    return WebhookSink(str(settings.WEBHOOK_URL), timeout=settings.WEBHOOK_TIMEOUT_SECONDS)
