"""Engine error taxonomy."""
from __future__ import annotations

from models.schemas import InvalidLedgerTransition


class EngineError(Exception):
    """Base class for dunning engine errors."""


class ConfigurationError(EngineError):
    """A campaign node references something that does not exist. Not retried."""

    def __init__(self, message: str, node_id: str = "", campaign_id: str = ""):
        super().__init__(message)
        self.node_id = node_id
        self.campaign_id = campaign_id


class DuplicateScheduledActionError(EngineError):
    """An active action already exists for the same (campaign, debt, node)."""

    def __init__(self, dedup_key: str):
        super().__init__(f"active scheduled action already exists: {dedup_key}")
        self.dedup_key = dedup_key


class StorageUnavailableError(EngineError):
    """The store could not be reached at the start of a pass."""


__all__ = [
    "EngineError", "ConfigurationError", "DuplicateScheduledActionError",
    "StorageUnavailableError", "InvalidLedgerTransition",
]
