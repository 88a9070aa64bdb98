"""
Call Channel Adapter: outbound calls placed by an ElevenLabs agent.

A call carries no rendered content: the agent id and the action's
variables (name, amount, due date, days overdue) drive the conversation.
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

from channels.base import ChannelAdapter, ChannelError, OutboundMessage, SendResult
from channels.providers.elevenlabs_client import ElevenLabsClient
from models.schemas import ChannelType

logger = structlog.get_logger()


class CallAdapter(ChannelAdapter):
    """Agent call adapter. Simulates calls when no API key is configured."""

    channel_type = ChannelType.CALL

    def __init__(self):
        super().__init__()
        self._client: Optional[ElevenLabsClient] = None
        self._default_number: str = ""

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._default_number = config.get("fallback_number", "")
        if config.get("api_key"):
            self._client = ElevenLabsClient(
                api_key=config["api_key"],
                phone_number_id=config.get("phone_number_id", ""),
            )
        self._initialized = True

    async def _do_send(self, message: OutboundMessage) -> SendResult:
        if not message.agent_id:
            raise ChannelError("call requires an agent_id", "call")
        to_number = message.destination or self._default_number
        if not to_number:
            raise ChannelError("no phone number for call", "call")

        if self._client is None:
            call_id = f"call_{uuid.uuid4().hex}"
            logger.info("call_simulated", to=to_number, agent_id=message.agent_id, call_id=call_id)
            return SendResult(success=True, external_id=call_id, details={"status": "mock_sent"})

        result = await self._client.start_call(
            agent_id=message.agent_id,
            to_number=to_number,
            dynamic_variables=message.variables,
            voice_config=message.voice_config,
        )
        if result.get("success") is False:
            raise ChannelError(result.get("message", "call rejected by provider"), "call", retryable=True)
        call_id = result.get("callSid") or result.get("call_id") or result.get("conversation_id")
        return SendResult(success=True, external_id=call_id, details={
            "status": "initiated",
            "conversation_id": result.get("conversation_id"),
        })

    async def shutdown(self) -> None:
        if self._client:
            await self._client.close()
