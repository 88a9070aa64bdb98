"""
Webhook Ingestor: reconciles provider delivery callbacks.

A callback is matched to its HistoryRecord by the provider-assigned
external id. Details are always merged, but the status only moves
forward (``status_advances``): late or replayed callbacks cannot downgrade
it. For failures the guardrails are consulted and the RetryScheduler
may create the next attempt. The record remembers the retry it produced, so a
replayed callback changes nothing.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from channels.base import ChannelRegistry
from core.retry import RetryScheduler
from database.store_base import BaseDunningStore
from guardrails.engine import GuardrailEngine, load_guardrail_config
from models.schemas import ChannelType, DeliveryEvent, HistoryStatus, status_advances, utcnow

logger = structlog.get_logger()


class WebhookIngestor:
    def __init__(
        self,
        store: BaseDunningStore,
        retry: RetryScheduler,
        guardrails: Optional[GuardrailEngine] = None,
        timezone: str = "UTC",
        retry_policy: str = "log",
        retry_permanent_failures: bool = True,
        guardrail_defaults: Optional[dict[str, Any]] = None,
        channels: Optional[ChannelRegistry] = None,
    ):
        self.store = store
        self.retry = retry
        self.guardrails = guardrails or GuardrailEngine(store)
        self.timezone = timezone
        self.retry_policy = retry_policy
        self.retry_permanent_failures = retry_permanent_failures
        self.guardrail_defaults = guardrail_defaults or {}
        self.channels = channels

    async def ingest(self, event: DeliveryEvent, now: Optional[datetime] = None) -> dict[str, Any]:
        """
        Apply one delivery event.

        Returns {"status": "not_found" | "updated" | "duplicate" | "retry_scheduled", ...}
        """
        now = now or utcnow()
        log = logger.bind(channel=event.channel.value, external_id=event.external_id,
                          delivery_status=event.status)

        record = await self.store.find_history_by_external_id(event.external_id)
        if record is None:
            log.warning("webhook_unknown_external_id")
            return {"status": "not_found"}

        incoming = HistoryStatus(event.status)
        advances = status_advances(record.status, incoming)
        await self.store.update_history(record.id, status=incoming if advances else None, details={
            **event.details,
            "webhook_received_at": event.received_at.isoformat(),
        })
        if advances:
            log.info("delivery_status_updated", history_id=record.id)
        else:
            log.info("delivery_status_stale", history_id=record.id, current_status=record.status.value)

        if not event.failed:
            return {"status": "updated", "history_id": record.id}

        if record.details.get("retry_action_id"):
            log.info("webhook_retry_already_scheduled", retry_action_id=record.details["retry_action_id"])
            return {"status": "duplicate", "history_id": record.id,
                    "retry_action_id": record.details["retry_action_id"]}

        if event.permanent and not self.retry_permanent_failures:
            self._suppress(event.channel, record.destination, event.status)
            await self.store.update_history(record.id, details={"retry_skipped": "permanent_failure"})
            return {"status": "updated", "history_id": record.id, "retry": "permanent_failure"}

        # Guardrails decide whether a retry may go out at all
        config = await load_guardrail_config(self.store, record.owner_id, self.timezone, self.guardrail_defaults)
        decision = await self.guardrails.allowed(record.owner_id, record.debt_id, record.channel, now, config)
        if not decision.allowed:
            enforced = self.retry_policy == "block"
            await self.store.update_history(record.id, details={
                "retry_guardrail": {"allowed": False, "reason": decision.reason, "enforced": enforced},
            })
            if enforced:
                log.info("retry_blocked", reason=decision.reason)
                return {"status": "updated", "history_id": record.id, "retry": "guardrail_blocked"}
            log.warning("guardrail_not_enforced", reason=decision.reason, stage="retry")

        retry = await self.retry.schedule_retry(record, now)
        if retry is None:
            return {"status": "updated", "history_id": record.id, "retry": "not_scheduled"}

        await self.store.update_history(record.id, details={"retry_action_id": retry.id})
        return {"status": "retry_scheduled", "history_id": record.id,
                "retry_action_id": retry.id, "attempt": retry.attempt}

    def _suppress(self, channel: ChannelType, destination: str, reason: str) -> None:
        if self.channels is None or channel != ChannelType.EMAIL or not destination:
            return
        adapter = self.channels.get(channel)
        if adapter is not None and hasattr(adapter, "suppress"):
            adapter.suppress(destination, reason)
