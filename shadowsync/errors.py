"""
Error taxonomy shared by the event store, reconciler and dispatcher.

Transient errors are safe to retry with backoff; everything else is
returned to the caller as-is.
"""


class ShadowSyncError(Exception):
    """Base exception for shadowsync errors"""
    retryable = False


class ValidationError(ShadowSyncError):
    """Malformed input, rejected before any side effect"""
    pass


class BackendError(ShadowSyncError):
    """Failure reported by an IoT hub backend"""
    pass


class TransientBackendError(BackendError):
    """Retryable backend failure (timeout, throttling, connection loss)"""
    retryable = True


class DeadlineExceededError(TransientBackendError):
    """The caller's deadline passed; the whole unit may be retried"""
    pass


class ShadowConflictError(TransientBackendError):
    """The shadow version moved on between read and write"""
    pass


class PermanentBackendError(BackendError):
    """Non-retryable backend failure"""
    pass


class DeviceNotFoundError(PermanentBackendError):
    """The device does not exist on the backend"""
    pass


class DuplicateEventError(ShadowSyncError):
    """An event with the same id was already recorded for the tenant"""

    def __init__(self, tenant_id: str, event_id: str):
        super().__init__(f"event {event_id} already exists")
        self.tenant_id = tenant_id
        self.event_id = event_id


class NotFoundError(ShadowSyncError):
    """Referenced resource is absent"""
    pass


class EventNotFoundError(NotFoundError):
    pass


class IntegrationNotFoundError(NotFoundError):
    pass


class RetryExhaustedError(ShadowSyncError):
    """Delivery retries for an event are used up"""

    def __init__(self, event_id: str, retry_count: int):
        super().__init__(f"event {event_id} exhausted its {retry_count} delivery attempts")
        self.event_id = event_id
        self.retry_count = retry_count


class SinkError(ShadowSyncError):
    """An event sink rejected or failed to accept an event"""
    retryable = True
