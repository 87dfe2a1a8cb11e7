"""Pub/sub module for kvsync."""

from .hub import PubSubHub, Subscription
from .variable import SharedVariable

__all__ = ["PubSubHub", "Subscription", "SharedVariable"]
