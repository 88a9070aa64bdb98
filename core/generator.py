"""
Scheduled-action generator: turns a TriggerFiring into a persisted
ScheduledAction plus the matching node-ledger entry.

The evaluator's ledger check is advisory; the authoritative "at most one
active action per (campaign, debt, node)" guard is the store's unique
dedup key, so two evaluators racing on the same debt end up with exactly
one action and one DUPLICATE result.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from core.errors import (
    ConfigurationError, DuplicateScheduledActionError, InvalidLedgerTransition,
)
from database.store_base import BaseDunningStore
from models.schemas import (
    CHANNEL_CONTACT_TYPE, Campaign, CampaignNode, ChannelType, Contact, Debt,
    DebtState, EventKind, LedgerEntry, LedgerStatus, NodeFilter, NodeType,
    ScheduledAction, TriggerFiring,
)
from triggers.schedule import next_evaluation_date, scheduled_time
from utils.clock import local_today
from utils.conditions import debt_facts, first_failing

logger = structlog.get_logger()

DEFAULT_DEBTOR_NAME = "Customer"


class GenerationStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    FILTERED = "filtered"
    CONFIG_ERROR = "config_error"


@dataclass
class GenerationResult:
    status: GenerationStatus
    action: Optional[ScheduledAction] = None
    reason: str = ""


def format_amount(amount: float) -> str:
    if float(amount).is_integer():
        return f"${int(amount)}"
    return f"${amount:.2f}"


def resolve_contact(contacts: list[Contact], channel: ChannelType) -> Optional[Contact]:
    """Preferred contact of the channel's contact type, else the first of that type."""
    wanted = CHANNEL_CONTACT_TYPE[channel]
    candidates = [c for c in contacts if c.type == wanted]
    if not candidates:
        return None
    return next((c for c in candidates if c.preferred), candidates[0])


def collect_filters(campaign: Campaign, node: CampaignNode) -> list[NodeFilter]:
    """The node's own filters plus those of filter nodes feeding directly into it."""
    filters = []
    if node.config.filters:
        filters.append(node.config.filters)
    for upstream in campaign.predecessors(node.id):
        if upstream.type == NodeType.FILTER and upstream.config.filters:
            filters.append(upstream.config.filters)
    return filters


class ActionGenerator:
    """Builds and persists ScheduledActions for trigger firings."""

    def __init__(self, store: BaseDunningStore, timezone: str = "UTC", send_hour: int = 9):
        self.store = store
        self.timezone = timezone
        self.send_hour = send_hour

    async def generate(self, firing: TriggerFiring, now: datetime) -> GenerationResult:
        log = logger.bind(campaign_id=firing.campaign.id, node_id=firing.node.id,
                          debt_id=firing.debt_id, event_kind=firing.trigger.event_kind.value)
        try:
            return await self._generate(firing, now, log)
        except ConfigurationError as e:
            log.warning("generation_config_error", error=str(e))
            return GenerationResult(GenerationStatus.CONFIG_ERROR, reason=str(e))

    async def _generate(self, firing: TriggerFiring, now: datetime, log) -> GenerationResult:
        today = local_today(now, self.timezone)
        trigger = firing.trigger

        debt = await self.store.get_debt(firing.debt_id)
        if debt is None or not debt.is_active:
            log.info("generation_skipped", reason="debt_inactive")
            return GenerationResult(GenerationStatus.SKIPPED, reason="debt_inactive")

        if trigger.event_kind == EventKind.DEBT_CREATED and debt.state != DebtState.NEW:
            return GenerationResult(GenerationStatus.SKIPPED, reason="debt_no_longer_new")
        if trigger.event_kind == EventKind.DAYS_AFTER_DUE and debt.state != DebtState.OVERDUE:
            return GenerationResult(GenerationStatus.SKIPPED, reason="debt_not_overdue")

        campaign = await self.store.get_campaign(firing.campaign.id) or firing.campaign
        node = campaign.node(firing.node.id)
        if node is None or not node.type.is_communication:
            log.info("generation_skipped", reason="node_missing")
            return GenerationResult(GenerationStatus.SKIPPED, reason="node_missing")
        channel = ChannelType(node.type.value)

        contacts = await self.store.list_contacts(debt.debtor_id)
        failing = first_failing(collect_filters(campaign, node), debt_facts(debt, contacts, today))
        if failing is not None:
            log.info("generation_filtered", condition=failing.describe())
            return GenerationResult(GenerationStatus.FILTERED, reason=failing.describe())

        template_id, agent_id = await self._resolve_content(campaign, node, channel)

        contact = resolve_contact(contacts, channel)
        if contact is None and channel != ChannelType.CALL:
            raise ConfigurationError(
                f"debtor {debt.debtor_id} has no {CHANNEL_CONTACT_TYPE[channel].value} contact",
                node_id=node.id, campaign_id=campaign.id,
            )

        existing = await self.store.find_active_action(campaign.id, debt.id, node.id)
        if existing is not None:
            log.info("generation_duplicate", existing_action_id=existing.id)
            return GenerationResult(GenerationStatus.DUPLICATE, action=existing, reason="active_action_exists")

        when = scheduled_time(trigger, debt, today, self.timezone, self.send_hour)
        action = ScheduledAction(
            owner_id=debt.owner_id,
            debt_id=debt.id,
            debtor_id=debt.debtor_id,
            campaign_id=campaign.id,
            node_id=node.id,
            channel=channel,
            contact_id=contact.id if contact else None,
            destination=contact.value if contact else "",
            template_id=template_id,
            agent_id=agent_id,
            voice_config=dict(node.config.voice_config) if channel == ChannelType.CALL else {},
            variables=await self._variables(debt, today),
            event_kind=trigger.event_kind,
            scheduled_time=when,
        )
        entry = LedgerEntry(
            scheduled_action_id=action.id,
            status=LedgerStatus.PENDING,
            event_kind=trigger.event_kind,
            event_date=firing.event_date,
            offset_days=trigger.offset_days,
            scheduled_time=when,
        )

        try:
            await self.store.persist_firing(action, entry, next_evaluation_date(trigger, debt, today))
        except DuplicateScheduledActionError as e:
            log.info("generation_duplicate", dedup_key=e.dedup_key)
            return GenerationResult(GenerationStatus.DUPLICATE, reason="unique_violation")
        except InvalidLedgerTransition:
            # Dispatched between our ledger read and this write
            log.info("generation_duplicate", reason="node_already_fired")
            return GenerationResult(GenerationStatus.DUPLICATE, reason="node_already_fired")

        log.info("scheduled_action_created", action_id=action.id, channel=channel.value,
                 scheduled_time=when.isoformat())
        return GenerationResult(GenerationStatus.CREATED, action=action)

    async def _resolve_content(
        self, campaign: Campaign, node: CampaignNode, channel: ChannelType,
    ) -> tuple[Optional[str], Optional[str]]:
        if channel == ChannelType.CALL:
            if not node.config.agent_id:
                raise ConfigurationError("call node has no agent_id", node_id=node.id, campaign_id=campaign.id)
            return None, node.config.agent_id

        template_id = node.config.template_id
        if not template_id:
            raise ConfigurationError(f"{channel.value} node has no template_id",
                                     node_id=node.id, campaign_id=campaign.id)
        if await self.store.get_template(template_id) is None:
            raise ConfigurationError(f"template {template_id} does not exist",
                                     node_id=node.id, campaign_id=campaign.id)
        return template_id, None

    async def _variables(self, debt: Debt, today) -> dict[str, Any]:
        debtor = await self.store.get_debtor(debt.debtor_id)
        return {
            "name": debtor.name if debtor and debtor.name else DEFAULT_DEBTOR_NAME,
            "amount": format_amount(debt.amount),
            "due_date": debt.due_date.isoformat(),
            "days_overdue": str(debt.days_overdue(today)),
        }
