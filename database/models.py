"""
ORM tables for debts, campaigns, workflow ledgers and scheduled actions.

The same schema runs on PostgreSQL, MySQL 8+ and SQLite:
  - Graphs, ledgers, template variables and history details are plain
    JSON columns (no JSONB).
  - "One active action per (campaign, debt, node)" is a UNIQUE constraint
    on ``dedup_key``. The column is only filled while the action is
    pending or running, so no partial index is needed.
  - Primary keys are generated string ids.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Float, Date, DateTime, Text, Boolean,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Debtors & contacts
# ──────────────────────────────────────────────────────────────

class DebtorRow(Base):
    __tablename__ = "debtors"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    external_id: Mapped[str] = mapped_column(String(256), default="")
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_debtors_owner", "owner_id"),
    )


class ContactRow(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    debtor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    value: Mapped[str] = mapped_column(String(320), nullable=False)
    preferred: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_contacts_debtor", "debtor_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Debts & payments
# ──────────────────────────────────────────────────────────────

class DebtRow(Base):
    __tablename__ = "debts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    debtor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    state: Mapped[str] = mapped_column(String(16), default="new")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_debts_owner_state", "owner_id", "state"),
        Index("ix_debts_due_date", "due_date"),
    )


class PaymentRow(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    debt_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_payments_debt_created", "debt_id", "created_at"),
    )


class TemplateRow(Base):
    __tablename__ = "templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    subject: Mapped[str] = mapped_column(String(512), default="")
    content: Mapped[str] = mapped_column(Text, nullable=False)


# ──────────────────────────────────────────────────────────────
#  Campaigns & triggers
# ──────────────────────────────────────────────────────────────

class CampaignRow(Base):
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    state: Mapped[str] = mapped_column(String(16), default="draft")
    nodes: Mapped[Any] = mapped_column(JSON, default=list)
    edges: Mapped[Any] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_campaigns_owner_state", "owner_id", "state"),
    )


class TriggerRow(Base):
    __tablename__ = "triggers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    node_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    offset_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        Index("ix_triggers_campaign_active", "campaign_id", "active"),
    )


# ──────────────────────────────────────────────────────────────
#  Workflow progress
# ──────────────────────────────────────────────────────────────

class WorkflowDebtStateRow(Base):
    __tablename__ = "workflow_debt_states"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    debt_id: Mapped[str] = mapped_column(String(64), nullable=False)
    last_node_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    next_evaluation_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    nodes: Mapped[Any] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", "debt_id", name="uq_workflow_campaign_debt"),
    )


class ExecutionContextRow(Base):
    __tablename__ = "execution_contexts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    debt_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actions_dispatched: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", "debt_id", name="uq_execution_campaign_debt"),
    )


# ──────────────────────────────────────────────────────────────
#  Scheduled actions
# ──────────────────────────────────────────────────────────────

class ScheduledActionRow(Base):
    __tablename__ = "scheduled_actions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    debt_id: Mapped[str] = mapped_column(String(64), nullable=False)
    debtor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    node_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    destination: Mapped[str] = mapped_column(String(320), default="")
    template_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    agent_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    voice_config: Mapped[Any] = mapped_column(JSON, default=dict)
    variables: Mapped[Any] = mapped_column(JSON, default=dict)
    event_kind: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    retry_of_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    retry_of_attempt: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    outcome: Mapped[str] = mapped_column(Text, default="")
    dedup_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_scheduled_actions_status_time", "status", "scheduled_time"),
        Index("ix_scheduled_actions_campaign_debt", "campaign_id", "debt_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Communication history
# ──────────────────────────────────────────────────────────────

class HistoryRow(Base):
    __tablename__ = "communication_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    debt_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    node_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    scheduled_action_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    execution_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    destination: Mapped[str] = mapped_column(String(320), default="")
    status: Mapped[str] = mapped_column(String(16), default="initiated")
    external_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    guardrail_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    details: Mapped[Any] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_history_external", "external_id"),
        Index("ix_history_debt_created", "debt_id", "created_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Key/value configuration (owner_id NULL = global)
# ──────────────────────────────────────────────────────────────

class ConfigRow(Base):
    __tablename__ = "configuration"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_configuration_key_owner", "key", "owner_id"),
    )
