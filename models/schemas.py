"""
Core data models for the dunning engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    CALL = "call"


class NodeType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    CALL = "call"
    WAIT = "wait"
    FILTER = "filter"

    @property
    def is_communication(self) -> bool:
        return self in (NodeType.EMAIL, NodeType.SMS, NodeType.CALL)


class ContactType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


# Which contact type each channel delivers to
CHANNEL_CONTACT_TYPE: dict[ChannelType, ContactType] = {
    ChannelType.EMAIL: ContactType.EMAIL,
    ChannelType.SMS: ContactType.PHONE,
    ChannelType.CALL: ContactType.PHONE,
}


class DebtState(str, Enum):
    NEW = "new"
    CURRENT = "current"
    OVERDUE = "overdue"
    PAID = "paid"
    CANCELLED = "cancelled"


TERMINAL_DEBT_STATES = frozenset({DebtState.PAID, DebtState.CANCELLED})


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class CampaignState(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class EventKind(str, Enum):
    DEBT_CREATED = "debt_created"
    DAYS_BEFORE_DUE = "days_before_due"
    DUE_DAY = "due_day"
    DAYS_AFTER_DUE = "days_after_due"
    PAYMENT_REGISTERED = "payment_registered"

    @property
    def requires_offset(self) -> bool:
        return self in (EventKind.DAYS_BEFORE_DUE, EventKind.DAYS_AFTER_DUE)


class ActionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    CANCELLED = "cancelled"


ACTIVE_ACTION_STATUSES = frozenset({ActionStatus.PENDING, ActionStatus.RUNNING})


class LedgerStatus(str, Enum):
    PENDING = "pending"
    FIRED = "fired"
    FAILED = "failed"


class HistoryStatus(str, Enum):
    INITIATED = "initiated"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


TERMINAL_HISTORY_STATUSES = frozenset({HistoryStatus.FAILED, HistoryStatus.BLOCKED})

_DELIVERY_RANK = {
    HistoryStatus.INITIATED: 0,
    HistoryStatus.SENT: 1,
    HistoryStatus.DELIVERED: 2,
    HistoryStatus.OPENED: 3,
    HistoryStatus.CLICKED: 4,
    HistoryStatus.COMPLETED: 4,
}


def status_advances(current: HistoryStatus, incoming: HistoryStatus) -> bool:
    """
    Whether a callback may replace ``current`` with ``incoming``.

    Terminal statuses never change. A failure replaces any other status.
    Otherwise only a strictly later delivery stage wins, so late or
    replayed callbacks cannot move a record backwards.
    """
    if current in TERMINAL_HISTORY_STATUSES:
        return False
    if incoming in TERMINAL_HISTORY_STATUSES:
        return True
    return _DELIVERY_RANK[incoming] > _DELIVERY_RANK[current]


# ──────────────────────────────────────────────────────────────
#  Debt domain: read-only inputs to the engine
# ──────────────────────────────────────────────────────────────

class Debtor(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str
    name: str
    external_id: str = ""
    metadata: dict[str, Any] = {}


class Contact(BaseModel):
    """A reachable address for a debtor."""
    id: str = Field(default_factory=_new_id)
    debtor_id: str
    type: ContactType
    value: str                                # email address or E.164 phone
    preferred: bool = False


class Debt(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str
    debtor_id: str
    amount: float
    due_date: date
    state: DebtState = DebtState.NEW
    created_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None and self.state not in TERMINAL_DEBT_STATES

    def days_overdue(self, today: date) -> int:
        return max((today - self.due_date).days, 0)


class Payment(BaseModel):
    id: str = Field(default_factory=_new_id)
    debt_id: str
    amount: float
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


class Template(BaseModel):
    """Message template with {{variable}} placeholders."""
    id: str = Field(default_factory=_new_id)
    owner_id: str
    channel: ChannelType
    name: str = ""
    subject: str = ""
    content: str


# ──────────────────────────────────────────────────────────────
#  Campaign: graph of communication steps
# ──────────────────────────────────────────────────────────────

class NodeFilter(BaseModel):
    """Predicates a debt must satisfy before a node fires. Empty = match all."""
    debt_states: list[DebtState] = []
    amount_min: Optional[float] = None
    amount_max: Optional[float] = None
    days_overdue_min: Optional[int] = None
    days_overdue_max: Optional[int] = None
    contact_types: list[ContactType] = []


class NodeConfig(BaseModel):
    template_id: Optional[str] = None
    agent_id: Optional[str] = None
    voice_config: dict[str, Any] = {}
    filters: Optional[NodeFilter] = None
    wait_days: int = 0


class CampaignNode(BaseModel):
    id: str
    type: NodeType
    label: str = ""
    config: NodeConfig = Field(default_factory=NodeConfig)


class CampaignEdge(BaseModel):
    source: str
    target: str


class Campaign(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str
    name: str = ""
    state: CampaignState = CampaignState.DRAFT
    nodes: list[CampaignNode] = []
    edges: list[CampaignEdge] = []
    created_at: datetime = Field(default_factory=utcnow)

    def node(self, node_id: str) -> Optional[CampaignNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def predecessors(self, node_id: str) -> list[CampaignNode]:
        """Nodes with an edge pointing directly at ``node_id``."""
        sources = [e.source for e in self.edges if e.target == node_id]
        return [n for n in self.nodes if n.id in sources]


class Trigger(BaseModel):
    id: str = Field(default_factory=_new_id)
    campaign_id: str
    node_id: str
    event_kind: EventKind
    offset_days: Optional[int] = None
    active: bool = True


# ──────────────────────────────────────────────────────────────
#  Per (campaign, debt) progress
# ──────────────────────────────────────────────────────────────

class InvalidLedgerTransition(ValueError):
    """A node ledger entry was moved along a forbidden edge."""


# (from, to) pairs; None is "no entry yet"
_LEDGER_TRANSITIONS: frozenset[tuple[Optional[LedgerStatus], LedgerStatus]] = frozenset({
    (None, LedgerStatus.PENDING),
    (None, LedgerStatus.FIRED),
    (LedgerStatus.PENDING, LedgerStatus.PENDING),
    (LedgerStatus.PENDING, LedgerStatus.FIRED),
    (LedgerStatus.PENDING, LedgerStatus.FAILED),
    (LedgerStatus.FAILED, LedgerStatus.PENDING),
    (LedgerStatus.FAILED, LedgerStatus.FIRED),
    (LedgerStatus.FAILED, LedgerStatus.FAILED),
    (LedgerStatus.FIRED, LedgerStatus.FIRED),
})


class LedgerEntry(BaseModel):
    """What happened to one campaign node for one debt."""
    scheduled_action_id: Optional[str] = None
    status: LedgerStatus = LedgerStatus.PENDING
    event_kind: Optional[EventKind] = None
    event_date: Optional[datetime] = None
    offset_days: Optional[int] = None
    scheduled_time: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def blocks_regeneration(self) -> bool:
        return self.status in (LedgerStatus.PENDING, LedgerStatus.FIRED)


class WorkflowDebtState(BaseModel):
    """
    Progress of one debt through one campaign.

    ``nodes`` is the ledger: one entry per node that has been scheduled.
    A node whose entry is pending or fired is never scheduled again.
    """
    id: str = Field(default_factory=_new_id)
    campaign_id: str
    debt_id: str
    last_node_id: Optional[str] = None
    next_evaluation_date: Optional[date] = None
    nodes: dict[str, LedgerEntry] = {}
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def entry(self, node_id: str) -> Optional[LedgerEntry]:
        return self.nodes.get(node_id)

    def set_entry(self, node_id: str, entry: LedgerEntry) -> None:
        current = self.nodes.get(node_id)
        check_ledger_transition(current.status if current else None, entry.status, node_id)
        self.nodes[node_id] = entry
        self.updated_at = utcnow()

    def mark(self, node_id: str, status: LedgerStatus) -> LedgerEntry:
        current = self.nodes.get(node_id)
        check_ledger_transition(current.status if current else None, status, node_id)
        entry = (current or LedgerEntry()).model_copy(update={"status": status, "updated_at": utcnow()})
        self.nodes[node_id] = entry
        self.updated_at = entry.updated_at
        return entry


def check_ledger_transition(
    current: Optional[LedgerStatus], new: LedgerStatus, node_id: str = ""
) -> None:
    if (current, new) not in _LEDGER_TRANSITIONS:
        raise InvalidLedgerTransition(
            f"node {node_id!r}: {current.value if current else None} -> {new.value} not allowed"
        )


# ──────────────────────────────────────────────────────────────
#  ScheduledAction: one concrete intended communication
# ──────────────────────────────────────────────────────────────

class ScheduledAction(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str
    debt_id: str
    debtor_id: str
    campaign_id: str
    node_id: Optional[str] = None             # None only for legacy rows
    channel: ChannelType
    contact_id: Optional[str] = None
    destination: str = ""
    template_id: Optional[str] = None
    agent_id: Optional[str] = None
    voice_config: dict[str, Any] = {}
    variables: dict[str, Any] = {}
    event_kind: Optional[EventKind] = None
    scheduled_time: datetime
    status: ActionStatus = ActionStatus.PENDING
    attempt: int = 1
    retry_of_id: Optional[str] = None
    retry_of_attempt: Optional[int] = None
    outcome: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def dedup_key(self) -> Optional[str]:
        """Uniqueness key while active. Retries are keyed by attempt too."""
        if self.status not in ACTIVE_ACTION_STATUSES or self.node_id is None:
            return None
        key = f"{self.campaign_id}:{self.debt_id}:{self.node_id}"
        if self.retry_of_id:
            key += f":retry:{self.attempt}"
        return key


# ──────────────────────────────────────────────────────────────
#  History: immutable attempt log
# ──────────────────────────────────────────────────────────────

class HistoryRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str
    debt_id: str
    campaign_id: Optional[str] = None
    node_id: Optional[str] = None
    scheduled_action_id: Optional[str] = None
    execution_id: Optional[str] = None
    contact_id: Optional[str] = None
    channel: ChannelType
    destination: str = ""
    status: HistoryStatus = HistoryStatus.INITIATED
    external_id: Optional[str] = None
    attempt: int = 1
    guardrail_blocked: bool = False
    details: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)


class ExecutionContext(BaseModel):
    """Per (campaign, debt) execution record shared by every dispatch."""
    id: str = Field(default_factory=_new_id)
    campaign_id: str
    debt_id: str
    owner_id: str
    actions_dispatched: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)


class ConfigEntry(BaseModel):
    """Key/value configuration row. ``owner_id`` None means global."""
    key: str
    value: Any
    owner_id: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Engine value objects
# ──────────────────────────────────────────────────────────────

class GuardrailConfig(BaseModel):
    """Contact-frequency limits, loaded once per pass."""
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None
    blocked_weekdays: list[int] = []          # 0 = Monday … 6 = Sunday
    blocked_dates: list[date] = []
    max_messages_per_day: Optional[int] = None
    max_messages_per_week: Optional[int] = None
    timezone: str = "UTC"


class GuardrailDecision(BaseModel):
    allowed: bool
    reason: str = ""


class RetryPolicy(BaseModel):
    max_attempts: int
    backoff_base_seconds: int = 60
    backoff_cap_seconds: int = 1800


class TriggerMatch(BaseModel):
    applies: bool
    event_date: Optional[datetime] = None
    reason: str = ""


class TriggerFiring(BaseModel):
    """A trigger that applies today for a debt and has not fired yet."""
    campaign: Campaign
    node: CampaignNode
    trigger: Trigger
    debt_id: str
    event_date: datetime


class DeliveryEvent(BaseModel):
    """Provider-agnostic delivery callback."""
    channel: ChannelType
    external_id: str
    status: str                               # HistoryStatus value
    failed: bool = False
    permanent: bool = False
    details: dict[str, Any] = {}
    received_at: datetime = Field(default_factory=utcnow)
