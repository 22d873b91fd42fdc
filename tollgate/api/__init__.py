"""
Dashboard API
=============
Read-only HTTP surface over the call log and live events.
"""

from tollgate.api.router import api_router

__all__ = ["api_router"]
