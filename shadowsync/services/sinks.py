"""Event sinks the dispatcher delivers to.

Delivery is at-least-once: a sink may see the same event id more than
once and must treat repeats as no-ops.
"""
from abc import ABC, abstractmethod
from typing import Awaitable, Callable
import httpx
import orjson
import structlog
from ..errors import SinkError
from ..event_models import Event

log = structlog.get_logger()


class EventSink(ABC):
    """Destination for delivered events."""

    name: str = "sink"

    @abstractmethod
    async def send(self, tenant_id: str, event: Event) -> None:
        """
        Hand one event to the consumer.

        Raises:
            SinkError: If the consumer did not accept the event
        """
        pass


class WebhookSink(EventSink):
    """Delivers events as JSON POST requests to a webhook URL.

    Any 2xx response acknowledges the event. The event id travels in the
    ``X-Event-ID`` header so receivers can drop duplicates.
    """

    name = "webhook"

    def __init__(self, url: str, timeout: float = 10.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, tenant_id: str, event: Event) -> None:
        body = orjson.dumps(event.model_dump(mode="json"))
        headers = {
            "content-type": "application/json",
            "x-event-id": event.id,
            "x-event-type": event.type,
            "x-tenant-id": tenant_id,
        }
        try:
            response = await self._client.post(self.url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise SinkError(f"webhook request failed: {e.__class__.__name__}: {e}") from e

        if not response.is_success:
            raise SinkError(f"webhook responded {response.status_code}")
        log.debug("webhook.delivered", id=event.id, status_code=response.status_code)

    async def aclose(self):
        await self._client.aclose()


class CallbackSink(EventSink):
    """Delivers events to an async callable; any exception it raises is a failed delivery."""

    name = "callback"

    def __init__(self, callback: Callable[[str, Event], Awaitable[None]]):
        self._callback = callback

    async def send(self, tenant_id: str, event: Event) -> None:
        try:
            await self._callback(tenant_id, event)
        except SinkError:
            raise
        except Exception as e:
            raise SinkError(f"{e.__class__.__name__}: {e}") from e
