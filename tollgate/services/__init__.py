"""
Services
========
Collaborators driven by the gateway: storage, event fan-out and
notifications.
"""

from tollgate.services.events import EventBroadcaster
from tollgate.services.notifier import NullNotifier, WebhookNotifier
from tollgate.services.storage import CallStore

__all__ = ["CallStore", "EventBroadcaster", "NullNotifier", "WebhookNotifier"]
