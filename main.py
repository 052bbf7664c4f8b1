"""
Agency SMS Orchestrator - API entrypoint

Startup builds every long-lived client once and parks it on app.state:
DB engine/session factory, Telnyx client, LLM reply generator and the
Stripe usage reporter (when configured).
"""

from contextlib import asynccontextmanager

import httpx
import sentry_sdk
import structlog
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from config import get_settings
from database import build_engine, build_session_factory
from logger_config import configure_logger
from routers import cron, sms, webhook
from services.ai import ReplyGenerator, build_llm_client
from services.billing import StripeUsageReporter
from services.telnyx import TelnyxClient

settings = get_settings()
configure_logger()
logger = structlog.get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN, environment=settings.APP_ENV)

    engine = build_engine(settings.DATABASE_URL)
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.TELNYX_TIMEOUT_SECONDS, connect=5.0),
        limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
    )

    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.telnyx = TelnyxClient(
        api_key=settings.TELNYX_API_KEY,
        api_url=settings.TELNYX_API_URL,
        client=http_client,
    )
    app.state.replier = ReplyGenerator(
        build_llm_client(settings),
        model=settings.LLM_MODEL,
        timeout=settings.LLM_TIMEOUT_SECONDS,
        max_length=settings.SMS_MAX_LENGTH,
        max_tokens=settings.LLM_MAX_TOKENS,
    )
    app.state.billing_reporter = (
        StripeUsageReporter(settings.STRIPE_SECRET_KEY) if settings.billing_configured else None
    )

    logger.info(
        "Application started",
        env=settings.APP_ENV,
        llm=settings.llm_configured,
        billing=settings.billing_configured,
    )
    yield

    await http_client.aclose()
    await engine.dispose()
    logger.info("Application stopped")


app = FastAPI(title="Agency SMS Orchestrator", lifespan=lifespan)

app.include_router(webhook.router)
app.include_router(cron.router)
app.include_router(sms.router)

app.mount("/metrics", make_asgi_app())


@app.get("/health")
async def health():
    return {"status": "ok"}
