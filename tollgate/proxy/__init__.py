"""
Proxy
=====
Interception gateway and its HTTP listener.
"""

from tollgate.proxy.app import create_proxy_app
from tollgate.proxy.gateway import CallContext, Gateway

__all__ = ["CallContext", "Gateway", "create_proxy_app"]
