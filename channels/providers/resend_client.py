"""
Resend Email Client: transactional email delivery.

Send flow:
1. send_email() → POST /emails, returns the Resend email id
2. Delivery events arrive at /webhooks/email keyed by data.email_id

API Docs: https://resend.com/docs/api-reference/emails/send-email
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from models.schemas import ChannelType, DeliveryEvent, HistoryStatus

logger = structlog.get_logger()


class ResendClient:
    """Resend REST API client."""

    BASE_URL = "https://api.resend.com"

    STATUS_MAP = {
        "email.sent": HistoryStatus.SENT,
        "email.delivered": HistoryStatus.DELIVERED,
        "email.delivery_delayed": HistoryStatus.SENT,
        "email.opened": HistoryStatus.OPENED,
        "email.clicked": HistoryStatus.CLICKED,
        "email.bounced": HistoryStatus.FAILED,
        "email.complained": HistoryStatus.FAILED,
    }

    def __init__(self, api_key: str, from_email: str, from_name: str = ""):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.BASE_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        return self._client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.request(method, path, **kwargs)
        if resp.status_code >= 400:
            logger.error("resend_api_error", status=resp.status_code, body=resp.text[:500], path=path)
            resp.raise_for_status()
        return resp.json()

    async def send_email(self, to: str, subject: str, html: str, tags: dict[str, str] = None) -> dict[str, Any]:
        sender = f"{self.from_name} <{self.from_email}>" if self.from_name else self.from_email
        payload: dict[str, Any] = {"from": sender, "to": [to], "subject": subject, "html": html}
        if tags:
            payload["tags"] = [{"name": k, "value": v} for k, v in tags.items()]
        result = await self._request("POST", "/emails", json=payload)
        logger.info("resend_email_sent", to=to, email_id=result.get("id"))
        return result

    # ── Webhook Parsing ─────────────────────────────────────

    @staticmethod
    def parse_status_webhook(payload: dict[str, Any]) -> Optional[DeliveryEvent]:
        """
        Normalize a Resend webhook into a DeliveryEvent.

        Resend sends: {"type": "email.bounced", "created_at": ...,
                       "data": {"email_id": ..., "bounce": {"type": "Permanent", ...}}}
        """
        event_type = payload.get("type", "")
        data = payload.get("data") or {}
        email_id = data.get("email_id")
        if not email_id or event_type not in ResendClient.STATUS_MAP:
            return None

        bounce = data.get("bounce") or {}
        bounce_type = str(bounce.get("type", "")).lower()
        failed = event_type in ("email.bounced", "email.complained")
        permanent = event_type == "email.complained" or bounce_type in ("permanent", "hard")

        details: dict[str, Any] = {"provider_status": event_type}
        if bounce:
            details["bounce"] = bounce
        if event_type == "email.clicked" and data.get("click"):
            details["click"] = data["click"]

        return DeliveryEvent(
            channel=ChannelType.EMAIL,
            external_id=email_id,
            status=ResendClient.STATUS_MAP[event_type].value,
            failed=failed,
            permanent=permanent,
            details=details,
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
