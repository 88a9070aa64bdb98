"""
SMS Channel Adapter: Twilio SMS messaging.

Provides:
- GSM-7 vs Unicode detection for accurate segment counting
- Automatic truncation to the configured segment limit
- E.164 sanity check on the destination
- Simulated send when no credentials are configured (development)
"""
from __future__ import annotations

import re
import uuid
import structlog
from typing import Any, Optional

from channels.base import ChannelAdapter, ChannelError, OutboundMessage, SendResult
from channels.providers.twilio_sms import TwilioSMSClient
from models.schemas import ChannelType

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  GSM-7 CHARACTER SET & SEGMENT COUNTING
# ══════════════════════════════════════════════════════════════

_GSM7_CHARS = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)

# Extended GSM-7 characters cost two septets
_GSM7_EXTENDED = set("^{}[]~|\\€")

_E164 = re.compile(r"^\+?[1-9]\d{7,14}$")


def is_gsm7(text: str) -> bool:
    return all(c in _GSM7_CHARS or c in _GSM7_EXTENDED for c in text)


def segment_count(text: str) -> int:
    """
    GSM-7: 160 chars single / 153 per segment.
    Unicode (e.g. accented Spanish outside GSM-7): 70 single / 67 per segment.
    """
    if not text:
        return 0
    if is_gsm7(text):
        chars = sum(2 if c in _GSM7_EXTENDED else 1 for c in text)
        return 1 if chars <= 160 else (chars + 152) // 153
    return 1 if len(text) <= 70 else (len(text) + 66) // 67


def truncate_to_segments(content: str, max_segments: int) -> str:
    if segment_count(content) <= max_segments:
        return content
    per_segment = 153 if is_gsm7(content) else 67
    return content[: per_segment * max_segments - 3] + "..."


# ══════════════════════════════════════════════════════════════
#  SMS ADAPTER
# ══════════════════════════════════════════════════════════════

class SMSAdapter(ChannelAdapter):
    """SMS adapter with segment limits and Twilio transport."""

    channel_type = ChannelType.SMS

    def __init__(self):
        super().__init__()
        self._max_segments: int = 3
        self._client: Optional[TwilioSMSClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._max_segments = int(config.get("max_segments", 3))
        if config.get("account_sid") and config.get("auth_token"):
            self._client = TwilioSMSClient(
                account_sid=config["account_sid"],
                auth_token=config["auth_token"],
                from_number=config.get("from_number", ""),
                status_callback_url=config.get("status_callback_url", ""),
            )
        self._initialized = True

    @property
    def auth_token(self) -> str:
        return self._config.get("auth_token", "")

    @property
    def status_callback_url(self) -> str:
        return self._config.get("status_callback_url", "")

    async def _do_send(self, message: OutboundMessage) -> SendResult:
        phone = re.sub(r"[\s\-()]", "", message.destination)
        if not _E164.match(phone):
            raise ChannelError(f"invalid phone number {message.destination!r}", "sms")

        body = truncate_to_segments(message.content, self._max_segments)
        segments = segment_count(body)

        if self._client is None:
            sid = f"SM{uuid.uuid4().hex}"
            logger.info("sms_simulated", to=phone, segments=segments, sid=sid)
            return SendResult(success=True, external_id=sid,
                              details={"status": "mock_sent", "segments": segments})

        result = await self._client.send_sms(phone, body)
        return SendResult(success=True, external_id=result.get("sid"),
                          details={"status": result.get("status", "queued"), "segments": segments})

    async def shutdown(self) -> None:
        if self._client:
            await self._client.close()
