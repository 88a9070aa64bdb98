"""
Twilio SMS Client: outbound messages and status callbacks.

Send flow:
1. send_sms() → POST /Messages with a StatusCallback URL
2. Twilio posts form-encoded status callbacks (MessageSid, MessageStatus)
3. Callbacks carry X-Twilio-Signature, validated with the auth token

API Docs: https://www.twilio.com/docs/messaging/api/message-resource
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import structlog
from typing import Any, Mapping, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from models.schemas import ChannelType, DeliveryEvent, HistoryStatus

logger = structlog.get_logger()

# Twilio error codes that will not succeed on retry
PERMANENT_ERROR_CODES = {"21211", "21610", "21614", "30003", "30005", "30006", "30007"}


def compute_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """Twilio request signature: base64(HMAC-SHA1(url + sorted key/value pairs))."""
    data = url + "".join(f"{k}{params[k]}" for k in sorted(params))
    digest = hmac.new(auth_token.encode(), data.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def validate_signature(auth_token: str, signature: str, url: str, params: Mapping[str, str]) -> bool:
    if not auth_token or not signature:
        return False
    return hmac.compare_digest(compute_signature(auth_token, url, params), signature)


class TwilioSMSClient:
    """Twilio REST API client for SMS."""

    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"

    STATUS_MAP = {
        "queued": HistoryStatus.SENT,
        "accepted": HistoryStatus.SENT,
        "sending": HistoryStatus.SENT,
        "sent": HistoryStatus.SENT,
        "delivered": HistoryStatus.DELIVERED,
        "failed": HistoryStatus.FAILED,
        "undelivered": HistoryStatus.FAILED,
        "rejected": HistoryStatus.FAILED,
        "blocked": HistoryStatus.FAILED,
    }

    def __init__(self, account_sid: str, auth_token: str, from_number: str, status_callback_url: str = ""):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.status_callback_url = status_callback_url
        self.base_url = f"{self.BASE_URL}/{account_sid}"
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=(self.account_sid, self.auth_token),
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
        resp = await client.request(method, f"{self.base_url}{path}.json", **kwargs)
        if resp.status_code >= 400:
            logger.error("twilio_api_error", status=resp.status_code, body=resp.text[:500], path=path)
            resp.raise_for_status()
        return resp.json()

    async def send_sms(self, to: str, body: str) -> dict[str, Any]:
        # Twilio uses form-encoded POST, not JSON
        payload = {"From": self.from_number, "To": to, "Body": body}
        if self.status_callback_url:
            payload["StatusCallback"] = self.status_callback_url
        result = await self._request("POST", "/Messages", data=payload)
        logger.info("twilio_sms_sent", to=to, sid=result.get("sid"))
        return result

    # ── Webhook Parsing ─────────────────────────────────────

    @staticmethod
    def parse_status_webhook(payload: Mapping[str, Any]) -> Optional[DeliveryEvent]:
        sid = payload.get("MessageSid") or payload.get("SmsSid")
        status_raw = str(payload.get("MessageStatus") or payload.get("SmsStatus") or "").lower()
        if not sid or status_raw not in TwilioSMSClient.STATUS_MAP:
            return None

        error_code = str(payload.get("ErrorCode") or "")
        status = TwilioSMSClient.STATUS_MAP[status_raw]
        return DeliveryEvent(
            channel=ChannelType.SMS,
            external_id=sid,
            status=status.value,
            failed=status == HistoryStatus.FAILED,
            permanent=status_raw in ("rejected", "blocked") or error_code in PERMANENT_ERROR_CODES,
            details={
                "provider_status": status_raw,
                "error_code": error_code,
                "error_message": payload.get("ErrorMessage", ""),
            },
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
