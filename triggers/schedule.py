"""
Date arithmetic shared by the evaluator and the generator.

Every date-based event kind has a *target date* derived from the debt's
due date and the trigger offset. Actions are scheduled at a fixed local
hour on that date.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from models.schemas import Debt, EventKind, Trigger
from utils.clock import add_days, at_local_hour


def target_date(trigger: Trigger, debt: Debt) -> Optional[date]:
    """Calendar date the trigger is anchored to, None for event-driven kinds."""
    kind = trigger.event_kind
    if kind == EventKind.DAYS_BEFORE_DUE:
        if trigger.offset_days is None:
            return None
        return add_days(debt.due_date, -trigger.offset_days)
    if kind == EventKind.DUE_DAY:
        return debt.due_date
    if kind == EventKind.DAYS_AFTER_DUE:
        return add_days(debt.due_date, trigger.offset_days or 0)
    return None


def scheduled_time(trigger: Trigger, debt: Debt, today: date, tz: str, send_hour: int = 9) -> datetime:
    """
    When the resulting action should go out (aware, UTC).

    debt_created and payment_registered go out today; the date-based kinds
    go out on their target date, which for days_after_due may already be
    in the past, in which case the dispatcher picks it up immediately.
    """
    day = target_date(trigger, debt) or today
    return at_local_hour(day, send_hour, tz)


def next_evaluation_date(trigger: Trigger, debt: Debt, today: date) -> Optional[date]:
    """Forward-looking occurrence date; None once it has passed or for event-driven kinds."""
    if trigger.event_kind in (EventKind.DEBT_CREATED, EventKind.PAYMENT_REGISTERED):
        return None
    day = target_date(trigger, debt)
    if day is None or day < today:
        return None
    return day
