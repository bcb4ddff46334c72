"""Analytics events emitted by the store layer."""

from deepchat.analytics.events import (
    AnalyticsEmitter,
    AnalyticsEvent,
    EventListener,
    EventType,
)

__all__ = ["AnalyticsEmitter", "AnalyticsEvent", "EventListener", "EventType"]
