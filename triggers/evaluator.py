"""
Trigger Evaluator: decides which campaign nodes fire today for a debt.

Firing rules per event kind:
    debt_created        debt is new and not yet due
    days_before_due     today == due - offset          (exact day)
    due_day             today == due                   (exact day)
    days_after_due      debt is overdue and today >= due + offset  (on-or-after)
    payment_registered  a confirmed payment landed in the last 24 hours

The on-or-after rule for days_after_due means a missed cron run is caught
up the next day; the node ledger keeps it from firing twice.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timedelta
from typing import Optional

from database.store_base import BaseDunningStore
from models.schemas import (
    Campaign, CampaignState, Debt, DebtState, EventKind, Payment, Trigger,
    TriggerFiring, TriggerMatch, WorkflowDebtState,
)
from triggers.schedule import target_date
from utils.clock import local_today

logger = structlog.get_logger()

# Paused campaigns keep progressing debts that are already in flight
EVALUATED_CAMPAIGN_STATES = (CampaignState.ACTIVE, CampaignState.PAUSED)

PAYMENT_WINDOW = timedelta(hours=24)


def trigger_applies(
    trigger: Trigger, debt: Debt, today: date, now: datetime,
    recent_payment: Optional[Payment] = None,
) -> TriggerMatch:
    """Pure firing rule for one trigger against one debt."""
    kind = trigger.event_kind

    if kind == EventKind.DEBT_CREATED:
        if debt.state == DebtState.NEW and debt.due_date >= today:
            return TriggerMatch(applies=True, event_date=now)
        return TriggerMatch(applies=False, reason="not_new_or_already_due")

    if kind == EventKind.DAYS_BEFORE_DUE:
        if trigger.offset_days is None:
            return TriggerMatch(applies=False, reason="missing_offset")
        if today == target_date(trigger, debt):
            return TriggerMatch(applies=True, event_date=now)
        return TriggerMatch(applies=False, reason="not_target_day")

    if kind == EventKind.DUE_DAY:
        if today == debt.due_date:
            return TriggerMatch(applies=True, event_date=now)
        return TriggerMatch(applies=False, reason="not_due_day")

    if kind == EventKind.DAYS_AFTER_DUE:
        if debt.state != DebtState.OVERDUE:
            return TriggerMatch(applies=False, reason="not_overdue")
        if today >= target_date(trigger, debt):
            return TriggerMatch(applies=True, event_date=now)
        return TriggerMatch(applies=False, reason="before_target_day")

    if kind == EventKind.PAYMENT_REGISTERED:
        if recent_payment is not None:
            return TriggerMatch(applies=True, event_date=recent_payment.created_at)
        return TriggerMatch(applies=False, reason="no_recent_payment")

    return TriggerMatch(applies=False, reason="unknown_event_kind")


class TriggerEvaluator:
    """Produces the TriggerFirings for one debt across all of its owner's campaigns."""

    def __init__(self, store: BaseDunningStore, timezone: str = "UTC"):
        self.store = store
        self.timezone = timezone

    async def fires(self, trigger: Trigger, debt: Debt, now: datetime) -> TriggerMatch:
        recent_payment = None
        if trigger.event_kind == EventKind.PAYMENT_REGISTERED:
            recent_payment = await self.store.latest_confirmed_payment(debt.id, now - PAYMENT_WINDOW)
        return trigger_applies(trigger, debt, local_today(now, self.timezone), now, recent_payment)

    async def evaluate_debt(self, debt: Debt, now: datetime) -> list[TriggerFiring]:
        if not debt.is_active:
            return []

        today = local_today(now, self.timezone)
        campaigns = await self.store.list_campaigns(debt.owner_id, EVALUATED_CAMPAIGN_STATES)
        firings: list[TriggerFiring] = []

        for campaign in campaigns:
            triggers = await self.store.list_active_triggers(campaign.id)
            if not triggers:
                continue

            state = await self.store.get_workflow_state(campaign.id, debt.id)
            if state and state.next_evaluation_date and state.next_evaluation_date > today:
                logger.debug("campaign_not_due_for_evaluation", campaign_id=campaign.id,
                             debt_id=debt.id, next_evaluation=state.next_evaluation_date.isoformat())
                continue

            firings.extend(await self._evaluate_campaign(campaign, triggers, state, debt, now))

        return firings

    async def _evaluate_campaign(
        self, campaign: Campaign, triggers: list[Trigger],
        state: Optional[WorkflowDebtState], debt: Debt, now: datetime,
    ) -> list[TriggerFiring]:
        firings = []
        for trigger in triggers:
            node = campaign.node(trigger.node_id)
            if node is None or not node.type.is_communication:
                continue

            entry = state.entry(node.id) if state else None
            if entry and entry.blocks_regeneration:
                continue

            match = await self.fires(trigger, debt, now)
            if not match.applies:
                continue

            logger.info("trigger_fired", campaign_id=campaign.id, node_id=node.id,
                        debt_id=debt.id, event_kind=trigger.event_kind.value)
            firings.append(TriggerFiring(
                campaign=campaign, node=node, trigger=trigger,
                debt_id=debt.id, event_date=match.event_date,
            ))
        return firings
