"""
Persistence for the dunning engine.

Two interchangeable stores implement BaseDunningStore: SqlDunningStore
(SQLAlchemy async on PostgreSQL, MySQL or SQLite) and InMemoryDunningStore.

    from database import create_store
    store = create_store({"store_backend": "memory"})
    debts = await store.list_active_debts()
"""
from database.models import (
    Base, DebtorRow, ContactRow, DebtRow, PaymentRow, TemplateRow,
    CampaignRow, TriggerRow, WorkflowDebtStateRow, ExecutionContextRow,
    ScheduledActionRow, HistoryRow, ConfigRow,
)
from database.session import get_engine, get_session, init_db, close_db, configure_database
from database.store_base import BaseDunningStore
from database.store import SqlDunningStore
from database.store_memory import InMemoryDunningStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "DebtorRow", "ContactRow", "DebtRow", "PaymentRow", "TemplateRow",
    "CampaignRow", "TriggerRow", "WorkflowDebtStateRow", "ExecutionContextRow",
    "ScheduledActionRow", "HistoryRow", "ConfigRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "configure_database",
    # Store interface
    "BaseDunningStore",
    # Store backends
    "SqlDunningStore", "InMemoryDunningStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
