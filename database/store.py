"""
SqlDunningStore: Portable SQL queries for PostgreSQL, MySQL, SQLite.

Concurrency notes:
  - Status changes are single conditional UPDATE statements
    (``UPDATE … WHERE status = :expected``); rowcount tells the caller
    whether it won.
  - "At most one active action per (campaign, debt, node)" rides on the
    UNIQUE ``dedup_key`` column. IntegrityError → DuplicateScheduledActionError.
  - Ledger updates lock the workflow row (SELECT … FOR UPDATE where the
    dialect supports it) before rewriting its JSON.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select, update, and_, or_, func, text
from sqlalchemy.exc import IntegrityError, OperationalError

from core.errors import DuplicateScheduledActionError, StorageUnavailableError
from database.models import (
    CampaignRow, ConfigRow, ContactRow, DebtorRow, DebtRow, ExecutionContextRow,
    HistoryRow, PaymentRow, ScheduledActionRow, TemplateRow, TriggerRow,
    WorkflowDebtStateRow,
)
from database.session import get_session
from database.store_base import BaseDunningStore
from models.schemas import (
    ACTIVE_ACTION_STATUSES, ActionStatus, Campaign, CampaignState, ConfigEntry,
    Contact, Debt, DebtState, Debtor, ExecutionContext, HistoryRecord,
    HistoryStatus, LedgerEntry, LedgerStatus, Payment, PaymentStatus,
    ScheduledAction, Template, Trigger, WorkflowDebtState,
)

logger = structlog.get_logger()


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _enum_values(items: Iterable[Any]) -> list[str]:
    return [getattr(i, "value", i) for i in items]


class SqlDunningStore(BaseDunningStore):
    """
    Persistent dunning store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    async def ping(self) -> None:
        try:
            async with get_session() as db:
                await db.execute(text("SELECT 1"))
        except (OperationalError, OSError) as e:
            raise StorageUnavailableError(str(e)) from e

    # ── Debts, debtors, contacts ───────────────────────────

    async def save_debtor(self, debtor: Debtor) -> Debtor:
        async with get_session() as db:
            await db.merge(DebtorRow(
                id=debtor.id, owner_id=debtor.owner_id, name=debtor.name,
                external_id=debtor.external_id, metadata_=debtor.metadata,
            ))
        return debtor

    async def get_debtor(self, debtor_id: str) -> Optional[Debtor]:
        async with get_session() as db:
            row = await db.get(DebtorRow, debtor_id)
            if row is None:
                return None
            return Debtor(id=row.id, owner_id=row.owner_id, name=row.name,
                          external_id=row.external_id or "", metadata=row.metadata_ or {})

    async def save_contact(self, contact: Contact) -> Contact:
        async with get_session() as db:
            await db.merge(ContactRow(
                id=contact.id, debtor_id=contact.debtor_id, type=contact.type.value,
                value=contact.value, preferred=contact.preferred,
            ))
        return contact

    async def list_contacts(self, debtor_id: str) -> list[Contact]:
        async with get_session() as db:
            result = await db.execute(select(ContactRow).where(ContactRow.debtor_id == debtor_id))
            return [
                Contact(id=r.id, debtor_id=r.debtor_id, type=r.type, value=r.value, preferred=r.preferred)
                for r in result.scalars()
            ]

    async def save_debt(self, debt: Debt) -> Debt:
        async with get_session() as db:
            await db.merge(DebtRow(
                id=debt.id, owner_id=debt.owner_id, debtor_id=debt.debtor_id,
                amount=debt.amount, due_date=debt.due_date, state=debt.state.value,
                created_at=_utc(debt.created_at), deleted_at=_utc(debt.deleted_at),
            ))
        return debt

    async def get_debt(self, debt_id: str) -> Optional[Debt]:
        async with get_session() as db:
            row = await db.get(DebtRow, debt_id)
            return self._row_to_debt(row) if row else None

    async def list_active_debts(self, limit: int = 1000) -> list[Debt]:
        async with get_session() as db:
            stmt = (
                select(DebtRow)
                .where(and_(
                    DebtRow.deleted_at.is_(None),
                    DebtRow.state.notin_([DebtState.PAID.value, DebtState.CANCELLED.value]),
                ))
                .order_by(DebtRow.created_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_debt(r) for r in result.scalars()]

    async def transition_debt_state(
        self, debt_id: str, from_states: Iterable[DebtState], to_state: DebtState,
    ) -> bool:
        async with get_session() as db:
            stmt = (
                update(DebtRow)
                .where(and_(
                    DebtRow.id == debt_id,
                    DebtRow.deleted_at.is_(None),
                    DebtRow.state.in_(_enum_values(from_states)),
                ))
                .values(state=to_state.value, updated_at=datetime.now(timezone.utc))
            )
            result = await db.execute(stmt)
            return result.rowcount > 0

    async def mark_overdue_debts(self, today: date) -> int:
        async with get_session() as db:
            stmt = (
                update(DebtRow)
                .where(and_(
                    DebtRow.deleted_at.is_(None),
                    DebtRow.state.in_([DebtState.NEW.value, DebtState.CURRENT.value]),
                    DebtRow.due_date < today,
                ))
                .values(state=DebtState.OVERDUE.value, updated_at=datetime.now(timezone.utc))
            )
            result = await db.execute(stmt)
            return result.rowcount or 0

    async def save_payment(self, payment: Payment) -> Payment:
        async with get_session() as db:
            await db.merge(PaymentRow(
                id=payment.id, debt_id=payment.debt_id, amount=payment.amount,
                status=payment.status.value, created_at=_utc(payment.created_at),
                deleted_at=_utc(payment.deleted_at),
            ))
        return payment

    async def latest_confirmed_payment(self, debt_id: str, since: datetime) -> Optional[Payment]:
        async with get_session() as db:
            stmt = (
                select(PaymentRow)
                .where(and_(
                    PaymentRow.debt_id == debt_id,
                    PaymentRow.status == PaymentStatus.CONFIRMED.value,
                    PaymentRow.deleted_at.is_(None),
                    PaymentRow.created_at >= _utc(since),
                ))
                .order_by(PaymentRow.created_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return Payment(id=row.id, debt_id=row.debt_id, amount=row.amount,
                           status=row.status, created_at=_utc(row.created_at))

    async def save_template(self, template: Template) -> Template:
        async with get_session() as db:
            await db.merge(TemplateRow(
                id=template.id, owner_id=template.owner_id, channel=template.channel.value,
                name=template.name, subject=template.subject, content=template.content,
            ))
        return template

    async def get_template(self, template_id: str) -> Optional[Template]:
        async with get_session() as db:
            row = await db.get(TemplateRow, template_id)
            if row is None:
                return None
            return Template(id=row.id, owner_id=row.owner_id, channel=row.channel,
                            name=row.name or "", subject=row.subject or "", content=row.content)

    # ── Campaigns & triggers ───────────────────────────────

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        data = campaign.model_dump(mode="json")
        async with get_session() as db:
            await db.merge(CampaignRow(
                id=campaign.id, owner_id=campaign.owner_id, name=campaign.name,
                state=campaign.state.value, nodes=data["nodes"], edges=data["edges"],
                created_at=_utc(campaign.created_at),
            ))
        return campaign

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        async with get_session() as db:
            row = await db.get(CampaignRow, campaign_id)
            return self._row_to_campaign(row) if row else None

    async def list_campaigns(self, owner_id: str, states: Iterable[CampaignState]) -> list[Campaign]:
        async with get_session() as db:
            stmt = select(CampaignRow).where(and_(
                CampaignRow.owner_id == owner_id,
                CampaignRow.state.in_(_enum_values(states)),
            ))
            result = await db.execute(stmt)
            return [self._row_to_campaign(r) for r in result.scalars()]

    async def save_trigger(self, trigger: Trigger) -> Trigger:
        async with get_session() as db:
            await db.merge(TriggerRow(
                id=trigger.id, campaign_id=trigger.campaign_id, node_id=trigger.node_id,
                event_kind=trigger.event_kind.value, offset_days=trigger.offset_days,
                active=trigger.active,
            ))
        return trigger

    async def list_active_triggers(self, campaign_id: str) -> list[Trigger]:
        async with get_session() as db:
            stmt = select(TriggerRow).where(and_(
                TriggerRow.campaign_id == campaign_id,
                TriggerRow.active.is_(True),
            ))
            result = await db.execute(stmt)
            return [
                Trigger(id=r.id, campaign_id=r.campaign_id, node_id=r.node_id,
                        event_kind=r.event_kind, offset_days=r.offset_days, active=r.active)
                for r in result.scalars()
            ]

    # ── Workflow state ─────────────────────────────────────

    async def get_workflow_state(self, campaign_id: str, debt_id: str) -> Optional[WorkflowDebtState]:
        async with get_session() as db:
            row = await self._select_workflow(db, campaign_id, debt_id)
            return self._row_to_workflow(row) if row else None

    async def save_workflow_state(self, state: WorkflowDebtState) -> WorkflowDebtState:
        data = state.model_dump(mode="json")
        async with get_session() as db:
            row = await self._select_workflow(db, state.campaign_id, state.debt_id, lock=True)
            if row is None:
                row = WorkflowDebtStateRow(id=state.id, campaign_id=state.campaign_id, debt_id=state.debt_id)
                db.add(row)
            row.last_node_id = state.last_node_id
            row.next_evaluation_date = state.next_evaluation_date
            row.nodes = data["nodes"]
        return state

    async def mark_node(
        self, campaign_id: str, debt_id: str, node_id: str, status: LedgerStatus,
        *, only_if_action_id: Optional[str] = None,
        only_if_status: Optional[LedgerStatus] = None,
    ) -> bool:
        async with get_session() as db:
            row = await self._select_workflow(db, campaign_id, debt_id, lock=True)
            if row is None:
                if only_if_action_id is not None or only_if_status is not None:
                    return False
                row = WorkflowDebtStateRow(campaign_id=campaign_id, debt_id=debt_id, nodes={})
                db.add(row)
            state = self._row_to_workflow(row)
            entry = state.entry(node_id)
            if only_if_action_id is not None and (entry is None or entry.scheduled_action_id != only_if_action_id):
                return False
            if only_if_status is not None and (entry is None or entry.status != only_if_status):
                return False
            state.mark(node_id, status)
            row.nodes = state.model_dump(mode="json")["nodes"]
            return True

    # ── Scheduled actions ──────────────────────────────────

    async def persist_firing(
        self, action: ScheduledAction, entry: LedgerEntry,
        next_evaluation_date: Optional[date],
    ) -> ScheduledAction:
        try:
            async with get_session() as db:
                now = datetime.now(timezone.utc)
                superseded = await db.execute(
                    update(ScheduledActionRow)
                    .where(and_(
                        ScheduledActionRow.campaign_id == action.campaign_id,
                        ScheduledActionRow.debt_id == action.debt_id,
                        ScheduledActionRow.node_id.is_(None),
                        ScheduledActionRow.status.in_(_enum_values(ACTIVE_ACTION_STATUSES)),
                    ))
                    .values(status=ActionStatus.CANCELLED.value, outcome="superseded",
                            dedup_key=None, updated_at=now)
                )
                if superseded.rowcount:
                    logger.info("legacy_actions_superseded", count=superseded.rowcount,
                                campaign_id=action.campaign_id, debt_id=action.debt_id)

                db.add(self._action_to_row(action))
                await db.flush()

                row = await self._select_workflow(db, action.campaign_id, action.debt_id, lock=True)
                if row is None:
                    row = WorkflowDebtStateRow(campaign_id=action.campaign_id, debt_id=action.debt_id, nodes={})
                    db.add(row)
                state = self._row_to_workflow(row)
                state.set_entry(action.node_id, entry)
                row.nodes = state.model_dump(mode="json")["nodes"]
                row.last_node_id = action.node_id
                row.next_evaluation_date = next_evaluation_date
        except IntegrityError as e:
            raise DuplicateScheduledActionError(action.dedup_key or action.id) from e
        return action

    async def insert_action(self, action: ScheduledAction) -> ScheduledAction:
        try:
            async with get_session() as db:
                db.add(self._action_to_row(action))
        except IntegrityError as e:
            raise DuplicateScheduledActionError(action.dedup_key or action.id) from e
        return action

    async def get_action(self, action_id: str) -> Optional[ScheduledAction]:
        async with get_session() as db:
            row = await db.get(ScheduledActionRow, action_id)
            return self._row_to_action(row) if row else None

    async def find_active_action(self, campaign_id: str, debt_id: str, node_id: str) -> Optional[ScheduledAction]:
        async with get_session() as db:
            stmt = (
                select(ScheduledActionRow)
                .where(and_(
                    ScheduledActionRow.campaign_id == campaign_id,
                    ScheduledActionRow.debt_id == debt_id,
                    ScheduledActionRow.node_id == node_id,
                    ScheduledActionRow.status.in_(_enum_values(ACTIVE_ACTION_STATUSES)),
                ))
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_action(row) if row else None

    async def list_actions(self, debt_id: Optional[str] = None, campaign_id: Optional[str] = None) -> list[ScheduledAction]:
        async with get_session() as db:
            stmt = select(ScheduledActionRow).order_by(ScheduledActionRow.created_at)
            if debt_id is not None:
                stmt = stmt.where(ScheduledActionRow.debt_id == debt_id)
            if campaign_id is not None:
                stmt = stmt.where(ScheduledActionRow.campaign_id == campaign_id)
            result = await db.execute(stmt)
            return [self._row_to_action(r) for r in result.scalars()]

    async def list_due_actions(self, now: datetime, limit: int = 100) -> list[ScheduledAction]:
        async with get_session() as db:
            stmt = (
                select(ScheduledActionRow)
                .where(and_(
                    ScheduledActionRow.status == ActionStatus.PENDING.value,
                    ScheduledActionRow.scheduled_time <= _utc(now),
                ))
                .order_by(ScheduledActionRow.scheduled_time)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_action(r) for r in result.scalars()]

    async def transition_action(
        self, action_id: str, from_status: ActionStatus, to_status: ActionStatus,
        outcome: Optional[str] = None,
    ) -> bool:
        values: dict[str, Any] = {"status": to_status.value, "updated_at": datetime.now(timezone.utc)}
        if to_status not in ACTIVE_ACTION_STATUSES:
            values["dedup_key"] = None
        if outcome is not None:
            values["outcome"] = outcome
        async with get_session() as db:
            stmt = (
                update(ScheduledActionRow)
                .where(and_(
                    ScheduledActionRow.id == action_id,
                    ScheduledActionRow.status == from_status.value,
                ))
                .values(**values)
            )
            result = await db.execute(stmt)
            return result.rowcount > 0

    # ── History ────────────────────────────────────────────

    async def add_history(self, record: HistoryRecord) -> HistoryRecord:
        async with get_session() as db:
            db.add(HistoryRow(
                id=record.id, owner_id=record.owner_id, debt_id=record.debt_id,
                campaign_id=record.campaign_id, node_id=record.node_id,
                scheduled_action_id=record.scheduled_action_id,
                execution_id=record.execution_id, contact_id=record.contact_id,
                channel=record.channel.value, destination=record.destination,
                status=record.status.value, external_id=record.external_id,
                attempt=record.attempt, guardrail_blocked=record.guardrail_blocked,
                details=record.details, created_at=_utc(record.created_at),
            ))
        return record

    async def get_history(self, record_id: str) -> Optional[HistoryRecord]:
        async with get_session() as db:
            row = await db.get(HistoryRow, record_id)
            return self._row_to_history(row) if row else None

    async def find_history_by_external_id(self, external_id: str) -> Optional[HistoryRecord]:
        async with get_session() as db:
            stmt = (
                select(HistoryRow)
                .where(HistoryRow.external_id == external_id)
                .order_by(HistoryRow.created_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_history(row) if row else None

    async def update_history(self, record_id: str, status: Optional[str] = None,
                             details: Optional[dict[str, Any]] = None) -> None:
        async with get_session() as db:
            row = await db.get(HistoryRow, record_id, with_for_update=True)
            if row is None:
                return
            if status is not None:
                row.status = HistoryStatus(status).value
            if details:
                row.details = {**(row.details or {}), **details}

    async def list_history(self, debt_id: str) -> list[HistoryRecord]:
        async with get_session() as db:
            stmt = select(HistoryRow).where(HistoryRow.debt_id == debt_id).order_by(HistoryRow.created_at)
            result = await db.execute(stmt)
            return [self._row_to_history(r) for r in result.scalars()]

    async def count_history_since(self, debt_id: str, since: datetime) -> int:
        async with get_session() as db:
            stmt = select(func.count()).select_from(HistoryRow).where(and_(
                HistoryRow.debt_id == debt_id,
                HistoryRow.created_at >= _utc(since),
                HistoryRow.guardrail_blocked.is_(False),
            ))
            return (await db.execute(stmt)).scalar_one()

    # ── Execution contexts ─────────────────────────────────

    async def get_or_create_execution(self, campaign_id: str, debt_id: str, owner_id: str) -> ExecutionContext:
        existing = await self._find_execution(campaign_id, debt_id)
        if existing:
            return existing
        ctx = ExecutionContext(campaign_id=campaign_id, debt_id=debt_id, owner_id=owner_id)
        try:
            async with get_session() as db:
                db.add(ExecutionContextRow(
                    id=ctx.id, campaign_id=campaign_id, debt_id=debt_id, owner_id=owner_id,
                    started_at=ctx.started_at, last_activity_at=ctx.last_activity_at,
                ))
            logger.info("execution_context_created", execution_id=ctx.id,
                        campaign_id=campaign_id, debt_id=debt_id)
            return ctx
        except IntegrityError:
            # Another dispatcher created it between our read and insert
            return await self._find_execution(campaign_id, debt_id)

    async def touch_execution(self, execution_id: str, now: datetime) -> None:
        async with get_session() as db:
            await db.execute(
                update(ExecutionContextRow)
                .where(ExecutionContextRow.id == execution_id)
                .values(actions_dispatched=ExecutionContextRow.actions_dispatched + 1,
                        last_activity_at=_utc(now))
            )

    # ── Configuration ──────────────────────────────────────

    async def set_config(self, entry: ConfigEntry) -> None:
        async with get_session() as db:
            owner_clause = (ConfigRow.owner_id.is_(None) if entry.owner_id is None
                            else ConfigRow.owner_id == entry.owner_id)
            stmt = select(ConfigRow).where(and_(ConfigRow.key == entry.key, owner_clause))
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                db.add(ConfigRow(key=entry.key, owner_id=entry.owner_id, value=entry.value))
            else:
                row.value = entry.value

    async def get_config_values(self, owner_id: Optional[str] = None) -> dict[str, Any]:
        async with get_session() as db:
            clause = ConfigRow.owner_id.is_(None)
            if owner_id is not None:
                clause = or_(clause, ConfigRow.owner_id == owner_id)
            result = await db.execute(select(ConfigRow).where(clause))
            rows = list(result.scalars())
        values = {r.key: r.value for r in rows if r.owner_id is None}
        values.update({r.key: r.value for r in rows if r.owner_id is not None})
        return values

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    async def _select_workflow(db, campaign_id: str, debt_id: str, lock: bool = False):
        stmt = select(WorkflowDebtStateRow).where(and_(
            WorkflowDebtStateRow.campaign_id == campaign_id,
            WorkflowDebtStateRow.debt_id == debt_id,
        ))
        if lock:
            stmt = stmt.with_for_update()
        return (await db.execute(stmt)).scalar_one_or_none()

    async def _find_execution(self, campaign_id: str, debt_id: str) -> Optional[ExecutionContext]:
        async with get_session() as db:
            stmt = select(ExecutionContextRow).where(and_(
                ExecutionContextRow.campaign_id == campaign_id,
                ExecutionContextRow.debt_id == debt_id,
            ))
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return ExecutionContext(
                id=row.id, campaign_id=row.campaign_id, debt_id=row.debt_id,
                owner_id=row.owner_id, actions_dispatched=row.actions_dispatched,
                started_at=_utc(row.started_at), last_activity_at=_utc(row.last_activity_at),
            )

    @staticmethod
    def _row_to_debt(row: DebtRow) -> Debt:
        return Debt(
            id=row.id, owner_id=row.owner_id, debtor_id=row.debtor_id,
            amount=row.amount, due_date=row.due_date, state=row.state,
            created_at=_utc(row.created_at), deleted_at=_utc(row.deleted_at),
        )

    @staticmethod
    def _row_to_campaign(row: CampaignRow) -> Campaign:
        return Campaign.model_validate({
            "id": row.id, "owner_id": row.owner_id, "name": row.name or "",
            "state": row.state, "nodes": row.nodes or [], "edges": row.edges or [],
            "created_at": _utc(row.created_at),
        })

    @staticmethod
    def _row_to_workflow(row: WorkflowDebtStateRow) -> WorkflowDebtState:
        return WorkflowDebtState.model_validate({
            "id": row.id, "campaign_id": row.campaign_id, "debt_id": row.debt_id,
            "last_node_id": row.last_node_id,
            "next_evaluation_date": row.next_evaluation_date,
            "nodes": row.nodes or {},
        })

    @staticmethod
    def _action_to_row(action: ScheduledAction) -> ScheduledActionRow:
        return ScheduledActionRow(
            id=action.id, owner_id=action.owner_id, debt_id=action.debt_id,
            debtor_id=action.debtor_id, campaign_id=action.campaign_id,
            node_id=action.node_id, channel=action.channel.value,
            contact_id=action.contact_id, destination=action.destination,
            template_id=action.template_id, agent_id=action.agent_id,
            voice_config=action.voice_config, variables=action.variables,
            event_kind=action.event_kind.value if action.event_kind else None,
            scheduled_time=_utc(action.scheduled_time), status=action.status.value,
            attempt=action.attempt, retry_of_id=action.retry_of_id,
            retry_of_attempt=action.retry_of_attempt, outcome=action.outcome,
            dedup_key=action.dedup_key, created_at=_utc(action.created_at),
        )

    @staticmethod
    def _row_to_action(row: ScheduledActionRow) -> ScheduledAction:
        return ScheduledAction(
            id=row.id, owner_id=row.owner_id, debt_id=row.debt_id,
            debtor_id=row.debtor_id, campaign_id=row.campaign_id, node_id=row.node_id,
            channel=row.channel, contact_id=row.contact_id, destination=row.destination or "",
            template_id=row.template_id, agent_id=row.agent_id,
            voice_config=row.voice_config or {}, variables=row.variables or {},
            event_kind=row.event_kind, scheduled_time=_utc(row.scheduled_time),
            status=row.status, attempt=row.attempt, retry_of_id=row.retry_of_id,
            retry_of_attempt=row.retry_of_attempt, outcome=row.outcome or "",
            created_at=_utc(row.created_at), updated_at=_utc(row.updated_at),
        )

    @staticmethod
    def _row_to_history(row: HistoryRow) -> HistoryRecord:
        return HistoryRecord(
            id=row.id, owner_id=row.owner_id, debt_id=row.debt_id,
            campaign_id=row.campaign_id, node_id=row.node_id,
            scheduled_action_id=row.scheduled_action_id, execution_id=row.execution_id,
            contact_id=row.contact_id, channel=row.channel, destination=row.destination or "",
            status=row.status, external_id=row.external_id, attempt=row.attempt,
            guardrail_blocked=row.guardrail_blocked, details=row.details or {},
            created_at=_utc(row.created_at),
        )
