"""
Tollgate
========
Local intercepting proxy for LLM inference APIs with quota telemetry
and adaptive model routing.
"""

__version__ = "1.0.0"
