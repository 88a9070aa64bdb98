"""
Email Channel Adapter: Resend-backed email delivery.

Provides:
- HTML body from the rendered template, plain text wrapped in <p> blocks
- Subject fallback when the template defines none
- Suppression list fed by permanent bounces and complaints
- Simulated send when no API key is configured (development)
"""
from __future__ import annotations

import html
import re
import uuid
import structlog
from typing import Any, Optional

from channels.base import ChannelAdapter, ChannelError, OutboundMessage, SendResult
from channels.providers.resend_client import ResendClient
from models.schemas import ChannelType

logger = structlog.get_logger()

DEFAULT_SUBJECT = "Payment reminder"


def to_html(content: str) -> str:
    """Templates may be HTML already; plain text gets paragraph markup."""
    if re.search(r"<\w+[^>]*>", content):
        return content
    paragraphs = [p.strip() for p in content.split("\n\n") if p.strip()]
    return "".join(f"<p>{html.escape(p).replace(chr(10), '<br>')}</p>" for p in paragraphs)


class EmailAdapter(ChannelAdapter):
    """Email adapter with suppression and Resend transport."""

    channel_type = ChannelType.EMAIL

    def __init__(self):
        super().__init__()
        self._suppressed: set[str] = set()
        self._client: Optional[ResendClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        if config.get("api_key"):
            self._client = ResendClient(
                api_key=config["api_key"],
                from_email=config.get("from_email", "billing@example.com"),
                from_name=config.get("from_name", ""),
            )
        self._initialized = True

    async def _do_send(self, message: OutboundMessage) -> SendResult:
        email = message.destination.strip().lower()
        if not email or "@" not in email:
            raise ChannelError(f"invalid email address {message.destination!r}", "email")
        if self.is_suppressed(email):
            raise ChannelError(f"suppressed: {email}", "email")

        subject = message.subject or DEFAULT_SUBJECT
        body = to_html(message.content)

        if self._client is None:
            email_id = f"sim_{uuid.uuid4().hex}"
            logger.info("email_simulated", to=email, subject=subject, email_id=email_id)
            return SendResult(success=True, external_id=email_id, details={"status": "mock_sent"})

        tags = {k: str(v) for k, v in message.metadata.items() if k in ("action_id", "debt_id")}
        result = await self._client.send_email(email, subject, body, tags=tags)
        return SendResult(success=True, external_id=result.get("id"), details={"status": "sent"})

    # ── Suppression ───────────────────────────────────────────

    def is_suppressed(self, email: str) -> bool:
        return email.lower() in self._suppressed

    def suppress(self, email: str, reason: str) -> None:
        self._suppressed.add(email.lower())
        logger.warning("email_suppressed", email=email, reason=reason)

    async def shutdown(self) -> None:
        if self._client:
            await self._client.close()
