"""HTTP webhook bridge (FastAPI)."""

from .adapter import WebhookAdapter
from .bridge import HttpBridge
from .converters import CONVERTERS

__all__ = ["WebhookAdapter", "HttpBridge", "CONVERTERS"]
