"""
Dispatcher: drains due ScheduledActions through the channel adapters.

Per action:
    1. Claim it (pending → running). A lost claim means another worker has it.
    2. Cancel it if the debt was paid or closed after it was queued.
    3. Resolve the (campaign, debt) execution context.
    4. Check guardrails. ``dispatch_policy=log`` records a denial and sends
       anyway; ``block`` cancels the action.
    5. Render the template and call the adapter under a timeout.
    6. Write the HistoryRecord, close the action, update the node ledger.

An unexpected error on one action reverts it to pending and the batch
carries on with the next one.

A failed send only cancels the action. Retries come from delivery callbacks
through the RetryScheduler, never from this pass.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Optional

from channels.base import ChannelRegistry, OutboundMessage, SendResult
from core.errors import ConfigurationError
from database.store_base import BaseDunningStore
from guardrails.engine import GuardrailEngine, load_guardrail_config
from models.schemas import (
    ActionStatus, ChannelType, DebtState, EventKind, ExecutionContext,
    GuardrailConfig, GuardrailDecision, HistoryRecord, HistoryStatus,
    LedgerStatus, ScheduledAction, utcnow,
)
from utils.clock import local_today
from utils.templating import render

logger = structlog.get_logger()


class Dispatcher:
    def __init__(
        self,
        store: BaseDunningStore,
        channels: ChannelRegistry,
        guardrails: Optional[GuardrailEngine] = None,
        timezone: str = "UTC",
        adapter_timeout: float = 30.0,
        dispatch_policy: str = "log",
        guardrail_defaults: Optional[dict[str, Any]] = None,
    ):
        self.store = store
        self.channels = channels
        self.guardrails = guardrails or GuardrailEngine(store)
        self.timezone = timezone
        self.adapter_timeout = adapter_timeout
        self.dispatch_policy = dispatch_policy
        self.guardrail_defaults = guardrail_defaults or {}

    async def drain(self, now: Optional[datetime] = None, limit: int = 100) -> dict[str, int]:
        """
        Dispatch every pending action due at ``now``.

        Returns counts: {"due", "claimed", "sent", "failed", "blocked", "skipped", "lost", "errors"}
        """
        now = now or utcnow()
        stats = {"due": 0, "claimed": 0, "sent": 0, "failed": 0, "blocked": 0, "skipped": 0, "lost": 0, "errors": 0}
        # One guardrail config per owner per pass
        configs: dict[str, GuardrailConfig] = {}

        due = await self.store.list_due_actions(now, limit)
        stats["due"] = len(due)

        for action in due:
            if not await self.store.transition_action(action.id, ActionStatus.PENDING, ActionStatus.RUNNING):
                stats["lost"] += 1
                continue
            stats["claimed"] += 1

            try:
                outcome = await self._dispatch(action, now, configs)
                stats[outcome] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error("dispatch_error", action_id=action.id, debt_id=action.debt_id,
                             error=str(e), error_type=type(e).__name__)
                await self._revert(action, e)

        logger.info("dispatch_pass_complete", **stats)
        return stats

    # ══════════════════════════════════════════════════════════
    #  SINGLE ACTION
    # ══════════════════════════════════════════════════════════

    async def _dispatch(self, action: ScheduledAction, now: datetime,
                        configs: dict[str, GuardrailConfig]) -> str:
        log = logger.bind(action_id=action.id, debt_id=action.debt_id,
                          channel=action.channel.value, attempt=action.attempt)

        # 1. Debt still collectable
        debt = await self.store.get_debt(action.debt_id)
        if debt is None or not debt.is_active:
            await self._skip_inactive(action)
            log.info("dispatch_skipped_debt_inactive", debt_state=debt.state.value if debt else None)
            return "skipped"

        # 2. Execution context
        execution = await self.store.get_or_create_execution(
            action.campaign_id, action.debt_id, action.owner_id,
        )

        # 3. Guardrails
        if action.owner_id not in configs:
            configs[action.owner_id] = await load_guardrail_config(
                self.store, action.owner_id, self.timezone, self.guardrail_defaults,
            )
        decision = await self.guardrails.allowed(
            action.owner_id, action.debt_id, action.channel, now, configs[action.owner_id],
        )
        extra: dict[str, Any] = {}
        if not decision.allowed:
            if self.dispatch_policy == "block":
                await self._block(action, execution, decision)
                log.info("dispatch_blocked", reason=decision.reason)
                return "blocked"
            log.warning("guardrail_not_enforced", reason=decision.reason)
            extra["guardrail"] = {"allowed": False, "reason": decision.reason, "enforced": False}

        # 4. Render and send
        result = await self._send(action)

        # 5. Record
        details = {**result.details, **extra}
        if result.error:
            details["error"] = result.error
        if action.retry_of_id:
            details["retry_of_id"] = action.retry_of_id
        await self.store.add_history(self._history(action, execution, result, details))
        await self.store.touch_execution(execution.id, now)

        if result.success:
            await self.store.transition_action(action.id, ActionStatus.RUNNING, ActionStatus.DONE, outcome="sent")
            if action.node_id:
                await self.store.mark_node(action.campaign_id, action.debt_id, action.node_id, LedgerStatus.FIRED)
            if action.event_kind == EventKind.DEBT_CREATED:
                await self._activate_debt(action.debt_id, now)
            log.info("action_dispatched", external_id=result.external_id)
            return "sent"

        await self.store.transition_action(
            action.id, ActionStatus.RUNNING, ActionStatus.CANCELLED,
            outcome=f"failed: {result.error}"[:255],
        )
        if action.node_id:
            await self.store.mark_node(
                action.campaign_id, action.debt_id, action.node_id, LedgerStatus.FAILED,
                only_if_action_id=action.id, only_if_status=LedgerStatus.PENDING,
            )
        log.warning("action_dispatch_failed", error=result.error, retryable=result.retryable)
        return "failed"

    async def _send(self, action: ScheduledAction) -> SendResult:
        adapter = self.channels.get(action.channel)
        if adapter is None:
            return SendResult(success=False, error=f"no adapter for {action.channel.value}")

        try:
            message = await self.build_message(action)
        except ConfigurationError as e:
            return SendResult(success=False, error=str(e))

        try:
            return await asyncio.wait_for(adapter.send(message), timeout=self.adapter_timeout)
        except asyncio.TimeoutError:
            return SendResult(success=False, error="timeout", retryable=True,
                              details={"timeout_s": self.adapter_timeout})

    async def build_message(self, action: ScheduledAction) -> OutboundMessage:
        subject = content = ""
        if action.template_id:
            template = await self.store.get_template(action.template_id)
            if template is None:
                raise ConfigurationError(f"template {action.template_id} does not exist",
                                         node_id=action.node_id or "", campaign_id=action.campaign_id)
            subject = render(template.subject, action.variables)
            content = render(template.content, action.variables)

        return OutboundMessage(
            destination=action.destination,
            content=content,
            subject=subject,
            agent_id=action.agent_id,
            voice_config=action.voice_config,
            variables=action.variables,
            metadata={"action_id": action.id, "debt_id": action.debt_id,
                      "campaign_id": action.campaign_id, "attempt": action.attempt},
        )

    @staticmethod
    def _history(action: ScheduledAction, execution: ExecutionContext,
                 result: SendResult, details: dict[str, Any]) -> HistoryRecord:
        if not result.success:
            status = HistoryStatus.FAILED
        elif action.channel == ChannelType.CALL:
            status = HistoryStatus.INITIATED
        else:
            status = HistoryStatus.SENT
        return HistoryRecord(
            owner_id=action.owner_id,
            debt_id=action.debt_id,
            campaign_id=action.campaign_id,
            node_id=action.node_id,
            scheduled_action_id=action.id,
            execution_id=execution.id,
            contact_id=action.contact_id,
            channel=action.channel,
            destination=action.destination,
            status=status,
            external_id=result.external_id,
            attempt=action.attempt,
            details=details,
        )

    # ══════════════════════════════════════════════════════════
    #  OUTCOMES
    # ══════════════════════════════════════════════════════════

    async def _block(self, action: ScheduledAction, execution: ExecutionContext,
                     decision: GuardrailDecision) -> None:
        await self.store.add_history(HistoryRecord(
            owner_id=action.owner_id,
            debt_id=action.debt_id,
            campaign_id=action.campaign_id,
            node_id=action.node_id,
            scheduled_action_id=action.id,
            execution_id=execution.id,
            contact_id=action.contact_id,
            channel=action.channel,
            destination=action.destination,
            status=HistoryStatus.BLOCKED,
            attempt=action.attempt,
            guardrail_blocked=True,
            details={"guardrail": {"allowed": False, "reason": decision.reason, "enforced": True}},
        ))
        await self.store.transition_action(
            action.id, ActionStatus.RUNNING, ActionStatus.CANCELLED,
            outcome=f"guardrail_blocked: {decision.reason}",
        )
        if action.node_id:
            await self.store.mark_node(
                action.campaign_id, action.debt_id, action.node_id, LedgerStatus.FAILED,
                only_if_action_id=action.id, only_if_status=LedgerStatus.PENDING,
            )

    async def _skip_inactive(self, action: ScheduledAction) -> None:
        await self.store.transition_action(
            action.id, ActionStatus.RUNNING, ActionStatus.CANCELLED, outcome="debt_inactive",
        )
        if action.node_id:
            await self.store.mark_node(
                action.campaign_id, action.debt_id, action.node_id, LedgerStatus.FAILED,
                only_if_action_id=action.id, only_if_status=LedgerStatus.PENDING,
            )

    async def _activate_debt(self, debt_id: str, now: datetime) -> None:
        """new → current once the welcome message is out, unless already due."""
        debt = await self.store.get_debt(debt_id)
        if debt is None or debt.due_date < local_today(now, self.timezone):
            return
        if await self.store.transition_debt_state(debt_id, [DebtState.NEW], DebtState.CURRENT):
            logger.info("debt_state_changed", debt_id=debt_id, from_state="new", to_state="current")

    async def _revert(self, action: ScheduledAction, error: Exception) -> None:
        try:
            reverted = await self.store.transition_action(action.id, ActionStatus.RUNNING, ActionStatus.PENDING)
            await self.store.add_history(HistoryRecord(
                owner_id=action.owner_id,
                debt_id=action.debt_id,
                campaign_id=action.campaign_id,
                node_id=action.node_id,
                scheduled_action_id=action.id,
                contact_id=action.contact_id,
                channel=action.channel,
                destination=action.destination,
                status=HistoryStatus.FAILED,
                attempt=action.attempt,
                details={"error": str(error), "error_type": type(error).__name__, "reverted": reverted},
            ))
        except Exception as e:
            logger.error("dispatch_revert_failed", action_id=action.id, error=str(e))
