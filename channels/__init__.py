"""Channel adapters for email, SMS and agent calls."""
from channels.base import (
    ChannelAdapter,
    ChannelError,
    ChannelMetrics,
    ChannelRegistry,
    CircuitBreaker,
    OutboundMessage,
    SendResult,
)
from channels.email_adapter import EmailAdapter
from channels.sms_adapter import SMSAdapter
from channels.call_adapter import CallAdapter

__all__ = [
    "ChannelAdapter", "ChannelError", "ChannelMetrics", "ChannelRegistry", "CircuitBreaker",
    "OutboundMessage", "SendResult",
    "EmailAdapter", "SMSAdapter", "CallAdapter",
]
