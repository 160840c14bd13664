"""Subscription record and resource count sources."""

from .base import ResourceCountSource, SubscriptionRecordSource
from .memory import InMemorySubscriptionSource

__all__ = [
    "SubscriptionRecordSource",
    "ResourceCountSource",
    "InMemorySubscriptionSource",
]
