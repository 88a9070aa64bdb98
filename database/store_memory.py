"""
InMemoryDunningStore: Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlDunningStore
  - Safe under asyncio concurrency: every check-and-write runs without
    an await in between, so it is atomic on a single event loop
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional

from core.errors import DuplicateScheduledActionError, StorageUnavailableError
from database.store_base import BaseDunningStore
from models.schemas import (
    ACTIVE_ACTION_STATUSES, ActionStatus, Campaign, CampaignState,
    ConfigEntry, Contact, Debt, DebtState, Debtor, ExecutionContext,
    HistoryRecord, HistoryStatus, LedgerEntry, LedgerStatus, Payment, PaymentStatus,
    ScheduledAction, Template, Trigger, WorkflowDebtState,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDunningStore(BaseDunningStore):
    """
    Full-featured in-memory store with the same interface as SqlDunningStore.
    Returns copies of stored models so callers cannot mutate store state.
    """

    def __init__(self):
        self._debtors: dict[str, Debtor] = {}
        self._contacts: dict[str, Contact] = {}
        self._debts: dict[str, Debt] = {}
        self._payments: dict[str, Payment] = {}
        self._templates: dict[str, Template] = {}
        self._campaigns: dict[str, Campaign] = {}
        self._triggers: dict[str, Trigger] = {}
        self._workflow: dict[str, WorkflowDebtState] = {}      # "campaign:debt" → state
        self._actions: dict[str, ScheduledAction] = {}
        self._history: dict[str, HistoryRecord] = {}
        self._executions: dict[str, ExecutionContext] = {}     # "campaign:debt" → ctx
        self._config: dict[tuple[Optional[str], str], Any] = {}  # (owner, key) → value

        # Indexes
        self._dedup_index: dict[str, str] = {}                  # dedup_key → action_id
        self._external_index: dict[str, str] = {}               # external_id → history_id
        self.available = True
        logger.info("inmemory_store_initialized")

    async def ping(self) -> None:
        if not self.available:
            raise StorageUnavailableError("in-memory store marked unavailable")

    # ── Debts, debtors, contacts ──────────────────────────

    async def save_debtor(self, debtor: Debtor) -> Debtor:
        self._debtors[debtor.id] = debtor.model_copy(deep=True)
        return debtor

    async def get_debtor(self, debtor_id: str) -> Optional[Debtor]:
        d = self._debtors.get(debtor_id)
        return d.model_copy(deep=True) if d else None

    async def save_contact(self, contact: Contact) -> Contact:
        self._contacts[contact.id] = contact.model_copy(deep=True)
        return contact

    async def list_contacts(self, debtor_id: str) -> list[Contact]:
        return [c.model_copy() for c in self._contacts.values() if c.debtor_id == debtor_id]

    async def save_debt(self, debt: Debt) -> Debt:
        self._debts[debt.id] = debt.model_copy(deep=True)
        return debt

    async def get_debt(self, debt_id: str) -> Optional[Debt]:
        d = self._debts.get(debt_id)
        return d.model_copy(deep=True) if d else None

    async def list_active_debts(self, limit: int = 1000) -> list[Debt]:
        active = [d for d in self._debts.values() if d.is_active]
        active.sort(key=lambda d: d.created_at)
        return [d.model_copy(deep=True) for d in active[:limit]]

    async def transition_debt_state(
        self, debt_id: str, from_states: Iterable[DebtState], to_state: DebtState,
    ) -> bool:
        debt = self._debts.get(debt_id)
        if debt is None or debt.deleted_at is not None or debt.state not in set(from_states):
            return False
        debt.state = to_state
        return True

    async def mark_overdue_debts(self, today: date) -> int:
        count = 0
        for debt in self._debts.values():
            if (debt.deleted_at is None
                    and debt.state in (DebtState.NEW, DebtState.CURRENT)
                    and debt.due_date < today):
                debt.state = DebtState.OVERDUE
                count += 1
        return count

    async def save_payment(self, payment: Payment) -> Payment:
        self._payments[payment.id] = payment.model_copy(deep=True)
        return payment

    async def latest_confirmed_payment(self, debt_id: str, since: datetime) -> Optional[Payment]:
        matches = [
            p for p in self._payments.values()
            if p.debt_id == debt_id
            and p.status == PaymentStatus.CONFIRMED
            and p.deleted_at is None
            and p.created_at >= since
        ]
        if not matches:
            return None
        return max(matches, key=lambda p: p.created_at).model_copy()

    async def save_template(self, template: Template) -> Template:
        self._templates[template.id] = template.model_copy(deep=True)
        return template

    async def get_template(self, template_id: str) -> Optional[Template]:
        t = self._templates.get(template_id)
        return t.model_copy() if t else None

    # ── Campaigns & triggers ──────────────────────────────

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        self._campaigns[campaign.id] = campaign.model_copy(deep=True)
        return campaign

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        c = self._campaigns.get(campaign_id)
        return c.model_copy(deep=True) if c else None

    async def list_campaigns(self, owner_id: str, states: Iterable[CampaignState]) -> list[Campaign]:
        wanted = set(states)
        return [
            c.model_copy(deep=True) for c in self._campaigns.values()
            if c.owner_id == owner_id and c.state in wanted
        ]

    async def save_trigger(self, trigger: Trigger) -> Trigger:
        self._triggers[trigger.id] = trigger.model_copy()
        return trigger

    async def list_active_triggers(self, campaign_id: str) -> list[Trigger]:
        return [
            t.model_copy() for t in self._triggers.values()
            if t.campaign_id == campaign_id and t.active
        ]

    # ── Workflow state ────────────────────────────────────

    async def get_workflow_state(self, campaign_id: str, debt_id: str) -> Optional[WorkflowDebtState]:
        s = self._workflow.get(f"{campaign_id}:{debt_id}")
        return s.model_copy(deep=True) if s else None

    async def save_workflow_state(self, state: WorkflowDebtState) -> WorkflowDebtState:
        self._workflow[f"{state.campaign_id}:{state.debt_id}"] = state.model_copy(deep=True)
        return state

    async def mark_node(
        self, campaign_id: str, debt_id: str, node_id: str, status: LedgerStatus,
        *, only_if_action_id: Optional[str] = None,
        only_if_status: Optional[LedgerStatus] = None,
    ) -> bool:
        key = f"{campaign_id}:{debt_id}"
        state = self._workflow.get(key)
        if state is None:
            state = WorkflowDebtState(campaign_id=campaign_id, debt_id=debt_id)
            self._workflow[key] = state
        entry = state.entry(node_id)
        if only_if_action_id is not None and (entry is None or entry.scheduled_action_id != only_if_action_id):
            return False
        if only_if_status is not None and (entry is None or entry.status != only_if_status):
            return False
        state.mark(node_id, status)
        return True

    # ── Scheduled actions ─────────────────────────────────

    async def persist_firing(
        self, action: ScheduledAction, entry: LedgerEntry,
        next_evaluation_date: Optional[date],
    ) -> ScheduledAction:
        key = action.dedup_key
        if key and key in self._dedup_index:
            raise DuplicateScheduledActionError(key)

        wf_key = f"{action.campaign_id}:{action.debt_id}"
        state = self._workflow.get(wf_key) or WorkflowDebtState(
            campaign_id=action.campaign_id, debt_id=action.debt_id,
        )
        # Validate the ledger move before touching anything else
        staged = state.model_copy(deep=True)
        staged.set_entry(action.node_id, entry)
        staged.last_node_id = action.node_id
        staged.next_evaluation_date = next_evaluation_date

        for legacy in self._actions.values():
            if (legacy.campaign_id == action.campaign_id
                    and legacy.debt_id == action.debt_id
                    and legacy.node_id is None
                    and legacy.status in ACTIVE_ACTION_STATUSES):
                legacy.status = ActionStatus.CANCELLED
                legacy.outcome = "superseded"
                legacy.updated_at = _utcnow()
                logger.info("legacy_action_superseded", action_id=legacy.id)

        self._actions[action.id] = action.model_copy(deep=True)
        if key:
            self._dedup_index[key] = action.id
        self._workflow[wf_key] = staged
        return action

    async def insert_action(self, action: ScheduledAction) -> ScheduledAction:
        key = action.dedup_key
        if key and key in self._dedup_index:
            raise DuplicateScheduledActionError(key)
        self._actions[action.id] = action.model_copy(deep=True)
        if key:
            self._dedup_index[key] = action.id
        return action

    async def get_action(self, action_id: str) -> Optional[ScheduledAction]:
        a = self._actions.get(action_id)
        return a.model_copy(deep=True) if a else None

    async def find_active_action(self, campaign_id: str, debt_id: str, node_id: str) -> Optional[ScheduledAction]:
        for a in self._actions.values():
            if (a.campaign_id == campaign_id and a.debt_id == debt_id
                    and a.node_id == node_id and a.status in ACTIVE_ACTION_STATUSES):
                return a.model_copy(deep=True)
        return None

    async def list_actions(self, debt_id: Optional[str] = None, campaign_id: Optional[str] = None) -> list[ScheduledAction]:
        result = [
            a for a in self._actions.values()
            if (debt_id is None or a.debt_id == debt_id)
            and (campaign_id is None or a.campaign_id == campaign_id)
        ]
        result.sort(key=lambda a: a.created_at)
        return [a.model_copy(deep=True) for a in result]

    async def list_due_actions(self, now: datetime, limit: int = 100) -> list[ScheduledAction]:
        due = [
            a for a in self._actions.values()
            if a.status == ActionStatus.PENDING and a.scheduled_time <= now
        ]
        due.sort(key=lambda a: a.scheduled_time)
        return [a.model_copy(deep=True) for a in due[:limit]]

    async def transition_action(
        self, action_id: str, from_status: ActionStatus, to_status: ActionStatus,
        outcome: Optional[str] = None,
    ) -> bool:
        action = self._actions.get(action_id)
        if action is None or action.status != from_status:
            return False
        old_key = action.dedup_key
        action.status = to_status
        if outcome is not None:
            action.outcome = outcome
        action.updated_at = _utcnow()
        # dedup_key is derived from status; keep the index in step
        if old_key and action.dedup_key is None:
            self._dedup_index.pop(old_key, None)
        elif action.dedup_key and old_key is None:
            self._dedup_index[action.dedup_key] = action.id
        return True

    # ── History ───────────────────────────────────────────

    async def add_history(self, record: HistoryRecord) -> HistoryRecord:
        self._history[record.id] = record.model_copy(deep=True)
        if record.external_id:
            self._external_index[record.external_id] = record.id
        return record

    async def get_history(self, record_id: str) -> Optional[HistoryRecord]:
        h = self._history.get(record_id)
        return h.model_copy(deep=True) if h else None

    async def find_history_by_external_id(self, external_id: str) -> Optional[HistoryRecord]:
        hid = self._external_index.get(external_id)
        return await self.get_history(hid) if hid else None

    async def update_history(self, record_id: str, status: Optional[str] = None,
                             details: Optional[dict[str, Any]] = None) -> None:
        record = self._history.get(record_id)
        if record is None:
            return
        if status is not None:
            record.status = HistoryStatus(status)
        if details:
            record.details = {**record.details, **details}

    async def list_history(self, debt_id: str) -> list[HistoryRecord]:
        rows = [h for h in self._history.values() if h.debt_id == debt_id]
        rows.sort(key=lambda h: h.created_at)
        return [h.model_copy(deep=True) for h in rows]

    async def count_history_since(self, debt_id: str, since: datetime) -> int:
        return sum(
            1 for h in self._history.values()
            if h.debt_id == debt_id and h.created_at >= since and not h.guardrail_blocked
        )

    # ── Execution contexts ────────────────────────────────

    async def get_or_create_execution(self, campaign_id: str, debt_id: str, owner_id: str) -> ExecutionContext:
        key = f"{campaign_id}:{debt_id}"
        ctx = self._executions.get(key)
        if ctx is None:
            ctx = ExecutionContext(campaign_id=campaign_id, debt_id=debt_id, owner_id=owner_id)
            self._executions[key] = ctx
            logger.info("execution_context_created", execution_id=ctx.id,
                        campaign_id=campaign_id, debt_id=debt_id)
        return ctx.model_copy()

    async def touch_execution(self, execution_id: str, now: datetime) -> None:
        for ctx in self._executions.values():
            if ctx.id == execution_id:
                ctx.actions_dispatched += 1
                ctx.last_activity_at = now
                return

    # ── Configuration ─────────────────────────────────────

    async def set_config(self, entry: ConfigEntry) -> None:
        self._config[(entry.owner_id, entry.key)] = entry.value

    async def get_config_values(self, owner_id: Optional[str] = None) -> dict[str, Any]:
        values = {k: v for (o, k), v in self._config.items() if o is None}
        if owner_id is not None:
            values.update({k: v for (o, k), v in self._config.items() if o == owner_id})
        return values

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "debts": len(self._debts),
            "campaigns": len(self._campaigns),
            "scheduled_actions": len(self._actions),
            "active_actions": len(self._dedup_index),
            "history": len(self._history),
        }
