"""
Core Logic
==========
Telemetry extraction, pricing, routing and alert evaluation.
"""

from tollgate.core.extractor import (
    StreamTap,
    extract_snapshot,
    extract_usage,
    is_streaming_response,
)
from tollgate.core.router import route, should_route

__all__ = [
    "StreamTap",
    "extract_snapshot",
    "extract_usage",
    "is_streaming_response",
    "route",
    "should_route",
]
