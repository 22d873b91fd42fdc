"""
Proxy Application
=================
Catch-all FastAPI app that hands every request to the gateway.
"""

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import Response

from tollgate.proxy.gateway import Gateway

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def create_proxy_app(gateway: Gateway) -> FastAPI:
    """Build the proxy listener around a gateway."""
    router = APIRouter()

    @router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request, path: str) -> Response:
        return await gateway.handle(request)

    app = FastAPI(
        title="Tollgate Proxy",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.gateway = gateway
    app.include_router(router)
    return app
