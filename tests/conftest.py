"""Shared test fixtures for the dunning engine."""
import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from channels.base import ChannelAdapter, ChannelRegistry, OutboundMessage, SendResult
from config.settings import EngineConfig, Settings
from core.batch import DunningEngine
from database.store_memory import InMemoryDunningStore
from models.schemas import (
    Campaign, CampaignNode, CampaignState, ChannelType, Contact, ContactType,
    Debt, DebtState, Debtor, EventKind, NodeConfig, NodeType, Template, Trigger,
)

# A Monday, midday UTC. Actions scheduled for 09:00 today are already due.
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.date()
OWNER = "owner_1"


class FakeAdapter(ChannelAdapter):
    """Records outbound messages and replays scripted results."""

    def __init__(self, channel_type: ChannelType):
        self.channel_type = channel_type
        super().__init__()
        self.sent: list[OutboundMessage] = []
        self.results: list[SendResult] = []
        self.delay: float = 0.0
        self.error: Optional[Exception] = None
        self._counter = 0

    async def initialize(self, config: dict[str, Any]) -> None:
        self._initialized = True

    async def _do_send(self, message: OutboundMessage) -> SendResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.sent.append(message)
        self._counter += 1
        if self.results:
            return self.results.pop(0)
        return SendResult(success=True, external_id=f"{self.channel_type.value}_{self._counter}")


@dataclass
class World:
    debtor: Debtor
    debt: Debt
    campaign: Campaign
    trigger: Trigger
    contacts: list[Contact] = field(default_factory=list)
    templates: dict[ChannelType, Template] = field(default_factory=dict)


@pytest.fixture
def store() -> InMemoryDunningStore:
    return InMemoryDunningStore()


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.engine = EngineConfig(timezone="UTC", send_hour=9, adapter_timeout_seconds=0.2)
    return s


@pytest.fixture
def adapters() -> dict[ChannelType, FakeAdapter]:
    return {ch: FakeAdapter(ch) for ch in ChannelType}


@pytest.fixture
def registry(adapters) -> ChannelRegistry:
    reg = ChannelRegistry()
    for adapter in adapters.values():
        reg.register(adapter)
    return reg


@pytest.fixture
def engine(store, registry, settings) -> DunningEngine:
    return DunningEngine(store, registry, settings)


@pytest.fixture
def seed(store):
    """Factory for a debtor with contacts, one debt, templates and a one-node campaign."""

    async def _seed(
        event_kind: EventKind = EventKind.DEBT_CREATED,
        offset_days: Optional[int] = None,
        node_type: NodeType = NodeType.EMAIL,
        due_date: Optional[date] = None,
        state: DebtState = DebtState.NEW,
        amount: float = 1500.0,
        node_config: Optional[NodeConfig] = None,
        campaign_state: CampaignState = CampaignState.ACTIVE,
        contact_types: tuple = (ContactType.EMAIL, ContactType.PHONE),
        debtor_name: str = "Ana Pérez",
        owner_id: str = OWNER,
    ) -> World:
        debtor = await store.save_debtor(Debtor(owner_id=owner_id, name=debtor_name))

        contacts = []
        if ContactType.EMAIL in contact_types:
            contacts.append(await store.save_contact(Contact(
                debtor_id=debtor.id, type=ContactType.EMAIL, value="ana@example.com", preferred=True,
            )))
        if ContactType.PHONE in contact_types:
            contacts.append(await store.save_contact(Contact(
                debtor_id=debtor.id, type=ContactType.PHONE, value="+56912345678",
            )))

        debt = await store.save_debt(Debt(
            owner_id=owner_id, debtor_id=debtor.id, amount=amount,
            due_date=due_date or TODAY + timedelta(days=30), state=state,
        ))

        templates = {
            ChannelType.EMAIL: await store.save_template(Template(
                owner_id=owner_id, channel=ChannelType.EMAIL, name="aviso",
                subject="Recordatorio para {{name}}",
                content="Hola {{name}}, su deuda de {{amount}} vence el {{due_date}}.",
            )),
            ChannelType.SMS: await store.save_template(Template(
                owner_id=owner_id, channel=ChannelType.SMS, name="aviso_sms",
                content="{{name}}: {{amount}} vence {{due_date}} ({{days_overdue}} dias de mora)",
            )),
        }

        if node_config is None:
            if node_type == NodeType.CALL:
                node_config = NodeConfig(agent_id="agent_123", voice_config={"voice": "es-CL"})
            elif node_type == NodeType.SMS:
                node_config = NodeConfig(template_id=templates[ChannelType.SMS].id)
            else:
                node_config = NodeConfig(template_id=templates[ChannelType.EMAIL].id)

        campaign = await store.save_campaign(Campaign(
            owner_id=owner_id, name="Cobranza preventiva", state=campaign_state,
            nodes=[CampaignNode(id="n1", type=node_type, config=node_config)],
        ))
        trigger = await store.save_trigger(Trigger(
            campaign_id=campaign.id, node_id="n1", event_kind=event_kind, offset_days=offset_days,
        ))
        return World(debtor=debtor, debt=debt, campaign=campaign, trigger=trigger,
                      contacts=contacts, templates=templates)

    return _seed
