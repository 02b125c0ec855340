"""
Shadow client interface and the in-memory hub used in development
"""
from .client import ShadowClient
from .memory import InMemoryShadowClient
from .models import Device, DeviceShadow, DeviceShadowUpdate, LocalDevice

__all__ = [
    "ShadowClient",
    "InMemoryShadowClient",
    "Device",
    "DeviceShadow",
    "DeviceShadowUpdate",
    "LocalDevice",
]
