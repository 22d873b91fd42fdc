"""
Tollgate
========
Process entry point: logging setup, runtime wiring and the two uvicorn
listeners (proxy and dashboard) sharing one event loop.
"""

import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app
from pydantic import ValidationError

from tollgate import __version__
from tollgate.api import api_router
from tollgate.config import Settings, get_settings
from tollgate.core.alerts import RATE_LIMIT_HIT, AlertMonitor
from tollgate.core.pricing import PricingEngine
from tollgate.database import close_db, create_engine, create_session_factory, init_db
from tollgate.jobs.scheduler import JobScheduler
from tollgate.proxy.app import create_proxy_app
from tollgate.proxy.gateway import Gateway
from tollgate.services.events import EventBroadcaster
from tollgate.services.notifier import Notifier, NullNotifier, WebhookNotifier
from tollgate.services.storage import CallStore

logger = structlog.get_logger()


def configure_logging(settings: Settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(format="%(message)s", level=settings.log_level)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass
class SessionStats:
    """Running totals for the shutdown summary, fed by broadcaster events."""

    calls: int = 0
    tokens: int = 0
    cost_usd: float = 0.0
    rate_limits: int = 0

    def __call__(self, event: str, data: dict[str, Any]) -> None:
        if event == "call":
            usage = data.get("usage") or {}
            self.calls += 1
            self.tokens += (usage.get("input_tokens") or 0) + (usage.get("output_tokens") or 0)
            self.cost_usd += data.get("cost_usd") or 0.0
        elif event == "alert" and data.get("type") == RATE_LIMIT_HIT:
            self.rate_limits += 1

    def summary(self) -> str:
        return (
            f"Session: {self.calls} calls, "
            f"{round(self.tokens / 1000)}k tokens, "
            f"${self.cost_usd:.2f}, "
            f"{self.rate_limits} rate limits hit"
        )


def build_notifier(settings: Settings) -> Notifier:
    if settings.notify_enabled and settings.notify_webhook_url:
        return WebhookNotifier(settings.notify_webhook_url)
    if settings.notify_enabled:
        logger.warning("Notifications enabled without a webhook URL, disabling")
    return NullNotifier()


class Tollgate:
    """
    Process runtime: owns the database engine, collaborators and gateway.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.engine = create_engine(settings.database_url)
        self.store = CallStore(create_session_factory(self.engine))
        self.broadcaster = EventBroadcaster()
        self.notifier = build_notifier(settings)
        self.alerts = AlertMonitor(settings.alert_policy, self.store, self.broadcaster, self.notifier)
        self.pricing = PricingEngine(settings.pricing_config_path)
        self.client = client or httpx.AsyncClient(
            base_url=settings.upstream_url,
            timeout=httpx.Timeout(
                settings.upstream_read_timeout,
                connect=settings.upstream_connect_timeout,
            ),
        )
        self.gateway = Gateway(
            client=self.client,
            store=self.store,
            broadcaster=self.broadcaster,
            alerts=self.alerts,
            pricing=self.pricing,
            routing_policy=settings.routing_policy,
        )
        self.scheduler = JobScheduler(self.store, settings.retention_days, settings.purge_hour)
        self.session = SessionStats()
        self.broadcaster.add_listener(self.session)

    async def start(self) -> None:
        logger.info("Starting Tollgate", env=self.settings.app_env, version=__version__)
        await init_db(self.engine)
        logger.info("Database connected", url=self.settings.database_url)

        await self.scheduler.run_purge()
        if self.settings.scheduler_enabled:
            self.scheduler.setup()
            self.scheduler.start()

    async def stop(self) -> None:
        logger.info("Shutting down Tollgate")
        self.scheduler.stop()
        await self.gateway.aclose()
        if isinstance(self.notifier, WebhookNotifier):
            await self.notifier.aclose()
        await close_db(self.engine)
        logger.info("Database disconnected")


def create_dashboard_app(runtime: Tollgate) -> FastAPI:
    """Build the dashboard API around a runtime."""
    settings = runtime.settings
    app = FastAPI(
        title="Tollgate Dashboard API",
        description="Live quota, cost and routing telemetry for the local LLM proxy",
        version=__version__,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )

    app.state.settings = settings
    app.state.store = runtime.store
    app.state.broadcaster = runtime.broadcaster
    app.state.alerts = runtime.alerts
    app.state.pricing = runtime.pricing

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if not settings.is_production else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount Prometheus metrics endpoint
    if settings.metrics_enabled:
        app.mount("/metrics", make_asgi_app())

    app.include_router(api_router)
    return app


async def serve(settings: Settings) -> None:
    """Run the proxy and dashboard listeners until interrupted."""
    runtime = Tollgate(settings)
    await runtime.start()

    log_level = settings.log_level.lower()
    proxy = uvicorn.Server(
        uvicorn.Config(
            create_proxy_app(runtime.gateway),
            host=settings.proxy_host,
            port=settings.proxy_port,
            log_level=log_level,
        )
    )
    dashboard = uvicorn.Server(
        uvicorn.Config(
            create_dashboard_app(runtime),
            host=settings.dashboard_host,
            port=settings.dashboard_port,
            log_level=log_level,
        )
    )

    logger.info(
        "Tollgate listening",
        proxy=f"http://{settings.proxy_host}:{settings.proxy_port}",
        dashboard=f"http://{settings.dashboard_host}:{settings.dashboard_port}",
        upstream=settings.upstream_url,
        routing=settings.routing_enabled,
    )

    try:
        await asyncio.gather(proxy.serve(), dashboard.serve())
    finally:
        await runtime.stop()
        logger.info(runtime.session.summary())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tollgate",
        description="Anthropic API proxy with token monitoring",
    )
    parser.add_argument("command", nargs="?", default="start", choices=["start"])
    parser.add_argument("--port", type=int, help="Proxy port (default: 4243)")
    parser.add_argument("--dashboard-port", type=int, help="Dashboard port (default: 4244)")
    parser.add_argument(
        "--routing",
        action="store_true",
        default=None,
        help="Enable model downgrade routing",
    )
    parser.add_argument("--warning-threshold", type=int, help="Token warning percent (default: 80)")
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    """Command-line flags layered over the environment settings."""
    overrides: dict[str, Any] = {}
    if args.port is not None:
        overrides["proxy_port"] = args.port
    if args.dashboard_port is not None:
        overrides["dashboard_port"] = args.dashboard_port
    if args.routing:
        overrides["routing_enabled"] = True
    if args.warning_threshold is not None:
        overrides["alert_warning_percent"] = args.warning_threshold

    if not overrides:
        return get_settings()
    return Settings(**overrides)


def run(argv: list[str] | None = None) -> None:
    """Entry point for the tollgate command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = settings_from_args(args)
    except ValidationError as e:
        parser.error(str(e))

    configure_logging(settings)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    run()
