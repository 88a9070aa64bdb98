"""
Abstract Dunning Store: Interface for all storage backends.

Implementations:
  - SqlDunningStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryDunningStore (dict-based, single-process, no persistence)

Every method that coordinates concurrent workers is a *conditional*
update: it returns False (or raises DuplicateScheduledActionError) when
another worker got there first, and never blocks.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Iterable, Optional

from models.schemas import (
    ActionStatus, Campaign, CampaignState, ConfigEntry, Contact, Debt,
    DebtState, Debtor, ExecutionContext, HistoryRecord, LedgerEntry,
    LedgerStatus, Payment, ScheduledAction, Template, Trigger,
    WorkflowDebtState,
)


class BaseDunningStore(ABC):
    """Interface that all dunning store backends must implement."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise StorageUnavailableError if the backend cannot be reached."""

    # ── Debts, debtors, contacts ──────────────────────────────

    @abstractmethod
    async def save_debtor(self, debtor: Debtor) -> Debtor:
        ...

    @abstractmethod
    async def get_debtor(self, debtor_id: str) -> Optional[Debtor]:
        ...

    @abstractmethod
    async def save_contact(self, contact: Contact) -> Contact:
        ...

    @abstractmethod
    async def list_contacts(self, debtor_id: str) -> list[Contact]:
        ...

    @abstractmethod
    async def save_debt(self, debt: Debt) -> Debt:
        ...

    @abstractmethod
    async def get_debt(self, debt_id: str) -> Optional[Debt]:
        ...

    @abstractmethod
    async def list_active_debts(self, limit: int = 1000) -> list[Debt]:
        """Non-deleted debts that are not paid or cancelled."""

    @abstractmethod
    async def transition_debt_state(
        self, debt_id: str, from_states: Iterable[DebtState], to_state: DebtState,
    ) -> bool:
        """Move a debt to ``to_state`` only if it is currently in ``from_states``."""

    @abstractmethod
    async def mark_overdue_debts(self, today: date) -> int:
        """new/current debts due before ``today`` become overdue. Returns count."""

    @abstractmethod
    async def save_payment(self, payment: Payment) -> Payment:
        ...

    @abstractmethod
    async def latest_confirmed_payment(self, debt_id: str, since: datetime) -> Optional[Payment]:
        ...

    @abstractmethod
    async def save_template(self, template: Template) -> Template:
        ...

    @abstractmethod
    async def get_template(self, template_id: str) -> Optional[Template]:
        ...

    # ── Campaigns & triggers ──────────────────────────────────

    @abstractmethod
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        ...

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        ...

    @abstractmethod
    async def list_campaigns(self, owner_id: str, states: Iterable[CampaignState]) -> list[Campaign]:
        ...

    @abstractmethod
    async def save_trigger(self, trigger: Trigger) -> Trigger:
        ...

    @abstractmethod
    async def list_active_triggers(self, campaign_id: str) -> list[Trigger]:
        ...

    # ── Workflow state (node ledger) ──────────────────────────

    @abstractmethod
    async def get_workflow_state(self, campaign_id: str, debt_id: str) -> Optional[WorkflowDebtState]:
        ...

    @abstractmethod
    async def save_workflow_state(self, state: WorkflowDebtState) -> WorkflowDebtState:
        ...

    @abstractmethod
    async def mark_node(
        self, campaign_id: str, debt_id: str, node_id: str, status: LedgerStatus,
        *, only_if_action_id: Optional[str] = None,
        only_if_status: Optional[LedgerStatus] = None,
    ) -> bool:
        """
        Move one ledger entry to ``status``.

        With ``only_if_action_id``/``only_if_status`` the update is skipped
        (returns False) unless the entry still points at that action in that
        status. Forbidden transitions raise InvalidLedgerTransition.
        """

    # ── Scheduled actions ─────────────────────────────────────

    @abstractmethod
    async def persist_firing(
        self, action: ScheduledAction, entry: LedgerEntry,
        next_evaluation_date: Optional[date],
    ) -> ScheduledAction:
        """
        Atomically: cancel legacy active actions for the same (campaign, debt)
        with no node reference, insert ``action``, and record ``entry`` plus
        ``next_evaluation_date`` in the workflow state.

        Raises DuplicateScheduledActionError when an active action already
        exists for (campaign, debt, node); nothing is written in that case.
        """

    @abstractmethod
    async def insert_action(self, action: ScheduledAction) -> ScheduledAction:
        """Insert a standalone action (retries). Raises DuplicateScheduledActionError."""

    @abstractmethod
    async def get_action(self, action_id: str) -> Optional[ScheduledAction]:
        ...

    @abstractmethod
    async def find_active_action(self, campaign_id: str, debt_id: str, node_id: str) -> Optional[ScheduledAction]:
        ...

    @abstractmethod
    async def list_actions(self, debt_id: Optional[str] = None, campaign_id: Optional[str] = None) -> list[ScheduledAction]:
        ...

    @abstractmethod
    async def list_due_actions(self, now: datetime, limit: int = 100) -> list[ScheduledAction]:
        """Pending actions with scheduled_time <= now, oldest first."""

    @abstractmethod
    async def transition_action(
        self, action_id: str, from_status: ActionStatus, to_status: ActionStatus,
        outcome: Optional[str] = None,
    ) -> bool:
        """Conditional status update; False when the action was not in ``from_status``."""

    # ── History ───────────────────────────────────────────────

    @abstractmethod
    async def add_history(self, record: HistoryRecord) -> HistoryRecord:
        ...

    @abstractmethod
    async def get_history(self, record_id: str) -> Optional[HistoryRecord]:
        ...

    @abstractmethod
    async def find_history_by_external_id(self, external_id: str) -> Optional[HistoryRecord]:
        ...

    @abstractmethod
    async def update_history(self, record_id: str, status: Optional[str] = None,
                             details: Optional[dict[str, Any]] = None) -> None:
        """Update delivery status and merge ``details`` into the existing details."""

    @abstractmethod
    async def list_history(self, debt_id: str) -> list[HistoryRecord]:
        ...

    @abstractmethod
    async def count_history_since(self, debt_id: str, since: datetime) -> int:
        """Attempts for a debt since ``since``, excluding guardrail-blocked ones."""

    # ── Execution contexts ────────────────────────────────────

    @abstractmethod
    async def get_or_create_execution(self, campaign_id: str, debt_id: str, owner_id: str) -> ExecutionContext:
        ...

    @abstractmethod
    async def touch_execution(self, execution_id: str, now: datetime) -> None:
        ...

    # ── Configuration ─────────────────────────────────────────

    @abstractmethod
    async def set_config(self, entry: ConfigEntry) -> None:
        ...

    @abstractmethod
    async def get_config_values(self, owner_id: Optional[str] = None) -> dict[str, Any]:
        """Global values overlaid with ``owner_id``'s overrides."""
