"""
Database Models
===============
SQLAlchemy ORM models for the call log.
"""

from tollgate.models.base import Base
from tollgate.models.telemetry import AlertRecord, CallRecord, RateLimitSnapshot

__all__ = [
    "Base",
    "CallRecord",
    "RateLimitSnapshot",
    "AlertRecord",
]
