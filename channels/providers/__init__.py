"""
Provider clients for outbound delivery.

Email: Resend. SMS: Twilio. Calls: ElevenLabs conversational agents.
Each client provides its send call, parse_status_webhook and close.
"""
from channels.providers.resend_client import ResendClient
from channels.providers.twilio_sms import TwilioSMSClient, compute_signature, validate_signature
from channels.providers.elevenlabs_client import ElevenLabsClient

__all__ = [
    "ResendClient", "TwilioSMSClient", "ElevenLabsClient",
    "compute_signature", "validate_signature",
]
