"""
API Dependencies
================
Accessors for runtime components attached to the dashboard app state.
"""

from fastapi import Request

from tollgate.config import Settings
from tollgate.core.alerts import AlertMonitor
from tollgate.core.pricing import PricingEngine
from tollgate.services.events import EventBroadcaster
from tollgate.services.storage import CallStore


def get_store(request: Request) -> CallStore:
    return request.app.state.store


def get_broadcaster(request: Request) -> EventBroadcaster:
    return request.app.state.broadcaster


def get_alert_monitor(request: Request) -> AlertMonitor:
    return request.app.state.alerts


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_pricing(request: Request) -> PricingEngine:
    return request.app.state.pricing
