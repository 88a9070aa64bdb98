"""
ElevenLabs Conversational AI Client: outbound agent calls over Twilio.

Call flow:
1. start_call() → the agent dials the debtor from the configured number
2. Call outcome arrives at /webhooks/voice keyed by call_id

API Docs: https://elevenlabs.io/docs/api-reference/twilio/outbound-call
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from models.schemas import ChannelType, DeliveryEvent, HistoryStatus

logger = structlog.get_logger()


class ElevenLabsClient:
    """ElevenLabs REST API client for agent-driven outbound calls."""

    BASE_URL = "https://api.elevenlabs.io/v1"

    STATUS_MAP = {
        "initiated": HistoryStatus.INITIATED,
        "in-progress": HistoryStatus.SENT,
        "completed": HistoryStatus.COMPLETED,
        "failed": HistoryStatus.FAILED,
        "no-answer": HistoryStatus.FAILED,
        "busy": HistoryStatus.FAILED,
    }

    def __init__(self, api_key: str, phone_number_id: str):
        self.api_key = api_key
        self.phone_number_id = phone_number_id
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.BASE_URL,
                headers={"xi-api-key": self.api_key},
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
            logger.error("elevenlabs_api_error", status=resp.status_code, body=resp.text[:500], path=path)
            resp.raise_for_status()
        return resp.json()

    async def start_call(
        self, agent_id: str, to_number: str,
        dynamic_variables: dict[str, Any] = None,
        voice_config: dict[str, Any] = None,
    ) -> dict[str, Any]:
        """
        Ask an agent to call ``to_number``.

        ``dynamic_variables`` fill the agent prompt placeholders;
        ``voice_config`` is passed through as a conversation config override.
        """
        client_data: dict[str, Any] = {"dynamic_variables": dynamic_variables or {}}
        if voice_config:
            client_data["conversation_config_override"] = voice_config
        payload = {
            "agent_id": agent_id,
            "agent_phone_number_id": self.phone_number_id,
            "to_number": to_number,
            "conversation_initiation_client_data": client_data,
        }
        logger.info("elevenlabs_start_call", agent_id=agent_id, to=to_number)
        return await self._request("POST", "/convai/twilio/outbound-call", json=payload)

    # ── Webhook Parsing ─────────────────────────────────────

    @staticmethod
    def parse_status_webhook(payload: dict[str, Any]) -> Optional[DeliveryEvent]:
        """
        Normalize a call outcome event.

        Sends: {"call_id": ..., "status": "completed" | "failed" | "no-answer" | "busy",
                "duration": 93, "cost": 0.12, "conversation_id": ..., "error": ...}
        """
        call_id = payload.get("call_id")
        status_raw = str(payload.get("status", "")).lower()
        if not call_id or status_raw not in ElevenLabsClient.STATUS_MAP:
            return None

        status = ElevenLabsClient.STATUS_MAP[status_raw]
        details: dict[str, Any] = {"provider_status": status_raw}
        if status == HistoryStatus.COMPLETED:
            details.update({
                "duration": payload.get("duration"),
                "cost": payload.get("cost"),
                "conversation_id": payload.get("conversation_id"),
            })
        elif status == HistoryStatus.FAILED:
            details["error"] = payload.get("error") or status_raw

        return DeliveryEvent(
            channel=ChannelType.CALL,
            external_id=call_id,
            status=status.value,
            failed=status == HistoryStatus.FAILED,
            permanent=False,
            details=details,
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
