"""
FastAPI Application: cron ingress and provider webhooks.

Provides:
- Cron endpoints that run the evaluation and dispatch passes
- Delivery-status webhooks for email (Resend), SMS (Twilio) and calls (ElevenLabs),
  rate limited per client IP
- Health and channel diagnostics
"""
from __future__ import annotations

import hmac
import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request

from config.settings import get_settings
from core.batch import DunningEngine
from core.errors import StorageUnavailableError
from channels.base import ChannelRegistry
from channels.email_adapter import EmailAdapter
from channels.sms_adapter import SMSAdapter
from channels.call_adapter import CallAdapter
from channels.providers.resend_client import ResendClient
from channels.providers.twilio_sms import TwilioSMSClient, validate_signature
from channels.providers.elevenlabs_client import ElevenLabsClient
from database.session import init_db, close_db
from database.store_factory import create_store
from models.schemas import ChannelType, DeliveryEvent, utcnow
from utils.log_config import configure_logging
from utils.rate_limit import KeyedRateLimiter

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

channel_registry = ChannelRegistry()
email_adapter = EmailAdapter()
sms_adapter = SMSAdapter()
call_adapter = CallAdapter()

channel_registry.register(email_adapter)
channel_registry.register(sms_adapter)
channel_registry.register(call_adapter)

engine: Optional[DunningEngine] = None
webhook_limiter: Optional[KeyedRateLimiter] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global engine, webhook_limiter
    settings = get_settings()
    configure_logging(settings.debug)

    per_hour = settings.engine.webhook_rate_limit_per_hour
    webhook_limiter = KeyedRateLimiter.per_hour(per_hour) if per_hour > 0 else None

    store = create_store({"store_backend": settings.database.store_backend})
    if settings.database.store_backend == "sql":
        await init_db()

    await channel_registry.initialize_all(settings.channels)
    engine = DunningEngine(store, channel_registry, settings)

    logger.info("dunning_engine_started",
                store=type(store).__name__,
                timezone=settings.engine.timezone,
                channels=[c.value for c in channel_registry.get_available()])
    yield

    await channel_registry.shutdown_all()
    if settings.database.store_backend == "sql":
        await close_db()
    engine = None
    logger.info("dunning_engine_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Dunning Engine API",
    description="Debt-collection trigger evaluation and scheduled-action dispatch",
    version="1.0.0",
    lifespan=lifespan,
)


def _engine() -> DunningEngine:
    if engine is None:
        raise HTTPException(503, "Engine not started")
    return engine


def _check_cron_auth(request: Request) -> None:
    secret = get_settings().engine.cron_secret
    if not secret:
        return
    header = request.headers.get("Authorization", "")
    token = header[7:] if header.startswith("Bearer ") else ""
    if not hmac.compare_digest(token, secret):
        logger.warning("cron_unauthorized", path=request.url.path)
        raise HTTPException(401, "Unauthorized")


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or (request.client.host if request.client else "unknown")


async def _check_webhook_rate(request: Request) -> None:
    if webhook_limiter is None:
        return
    ip = client_ip(request)
    if not await webhook_limiter.allow(ip):
        logger.warning("webhook_rate_limited", ip=ip, path=request.url.path)
        raise HTTPException(429, "Rate limit exceeded")


async def _ingest(event: Optional[DeliveryEvent], channel: str) -> dict[str, Any]:
    if event is None:
        logger.info("webhook_ignored", channel=channel)
        return {"status": "ignored"}
    return await _engine().ingest_webhook(event)


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    status = "healthy"
    if engine is not None:
        try:
            await engine.store.ping()
        except StorageUnavailableError:
            status = "degraded"
    return {
        "status": status,
        "timestamp": utcnow().isoformat(),
        "channels": [c.value for c in channel_registry.get_available()],
    }


@app.get("/api/channels/health")
async def channel_health():
    return await channel_registry.health_check_all()


# ══════════════════════════════════════════════════════════════
#  CRON
# ══════════════════════════════════════════════════════════════

@app.post("/api/cron/evaluate")
async def cron_evaluate(request: Request):
    _check_cron_auth(request)
    try:
        stats = await _engine().run_evaluation_pass()
    except StorageUnavailableError as e:
        logger.error("evaluation_pass_aborted", error=str(e))
        raise HTTPException(503, "Storage unavailable")
    return {"status": "ok", "stats": stats}


@app.post("/api/cron/dispatch")
async def cron_dispatch(request: Request):
    _check_cron_auth(request)
    try:
        stats = await _engine().run_dispatch_pass()
    except StorageUnavailableError as e:
        logger.error("dispatch_pass_aborted", error=str(e))
        raise HTTPException(503, "Storage unavailable")
    return {"status": "ok", "stats": stats}


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS: delivery status
# ══════════════════════════════════════════════════════════════

@app.post("/webhooks/email")
async def email_webhook(request: Request):
    """Resend event webhook (JSON)."""
    await _check_webhook_rate(request)
    body = await request.json()
    return await _ingest(ResendClient.parse_status_webhook(body), "email")


@app.post("/webhooks/sms")
async def sms_webhook(request: Request):
    """Twilio status callback: form-encoded, signed when an auth token is configured."""
    await _check_webhook_rate(request)
    params = {k: str(v) for k, v in (await request.form()).items()}

    auth_token = sms_adapter.auth_token
    if auth_token:
        url = sms_adapter.status_callback_url or str(request.url)
        signature = request.headers.get("X-Twilio-Signature", "")
        if not validate_signature(auth_token, signature, url, params):
            logger.warning("twilio_webhook_signature_invalid")
            raise HTTPException(403, "Invalid signature")

    return await _ingest(TwilioSMSClient.parse_status_webhook(params), "sms")


@app.post("/webhooks/voice")
async def voice_webhook(request: Request):
    """Call outcome events (JSON)."""
    await _check_webhook_rate(request)
    body = await request.json()
    return await _ingest(ElevenLabsClient.parse_status_webhook(body), ChannelType.CALL.value)
