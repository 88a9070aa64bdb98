"""Tests for trigger firing rules, schedule arithmetic and the evaluator."""
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from conftest import NOW, OWNER, TODAY
from models.schemas import (
    CampaignNode, CampaignState, Debt, DebtState, EventKind, LedgerEntry,
    LedgerStatus, NodeType, Payment, PaymentStatus, Trigger, WorkflowDebtState,
)
from triggers.evaluator import TriggerEvaluator, trigger_applies
from triggers.schedule import next_evaluation_date, scheduled_time, target_date


def _debt(due: date, state: DebtState = DebtState.NEW) -> Debt:
    return Debt(owner_id=OWNER, debtor_id="p1", amount=100, due_date=due, state=state)


def _trigger(kind: EventKind, offset=None) -> Trigger:
    return Trigger(campaign_id="c1", node_id="n1", event_kind=kind, offset_days=offset)


# ──────────────────────────────────────────────────────────────
#  Firing rules
# ──────────────────────────────────────────────────────────────

class TestDebtCreated:
    def test_new_debt_not_yet_due(self):
        assert trigger_applies(_trigger(EventKind.DEBT_CREATED), _debt(TODAY + timedelta(days=30)), TODAY, NOW).applies

    def test_due_today_still_applies(self):
        assert trigger_applies(_trigger(EventKind.DEBT_CREATED), _debt(TODAY), TODAY, NOW).applies

    def test_already_past_due(self):
        assert not trigger_applies(_trigger(EventKind.DEBT_CREATED), _debt(TODAY - timedelta(days=1)), TODAY, NOW).applies

    def test_not_new(self):
        debt = _debt(TODAY + timedelta(days=30), DebtState.CURRENT)
        assert not trigger_applies(_trigger(EventKind.DEBT_CREATED), debt, TODAY, NOW).applies


class TestDaysBeforeDue:
    def test_exact_day_only(self):
        trigger = _trigger(EventKind.DAYS_BEFORE_DUE, 3)
        debt = _debt(TODAY + timedelta(days=3))
        assert trigger_applies(trigger, debt, TODAY, NOW).applies
        assert not trigger_applies(trigger, debt, TODAY + timedelta(days=1), NOW).applies
        assert not trigger_applies(trigger, debt, TODAY - timedelta(days=1), NOW).applies

    def test_missing_offset_never_applies(self):
        match = trigger_applies(_trigger(EventKind.DAYS_BEFORE_DUE), _debt(TODAY), TODAY, NOW)
        assert not match.applies
        assert match.reason == "missing_offset"


class TestDueDay:
    """Debt due today fires on that date only."""

    def test_fires_on_due_date(self):
        assert trigger_applies(_trigger(EventKind.DUE_DAY), _debt(TODAY), TODAY, NOW).applies

    def test_day_before_and_after(self):
        debt = _debt(TODAY)
        assert not trigger_applies(_trigger(EventKind.DUE_DAY), debt, TODAY - timedelta(days=1), NOW).applies
        assert not trigger_applies(_trigger(EventKind.DUE_DAY), debt, TODAY + timedelta(days=1), NOW).applies


class TestDaysAfterDue:
    def test_on_target_day(self):
        debt = _debt(TODAY - timedelta(days=5), DebtState.OVERDUE)
        assert trigger_applies(_trigger(EventKind.DAYS_AFTER_DUE, 5), debt, TODAY, NOW).applies

    def test_catches_up_after_target_day(self):
        debt = _debt(TODAY - timedelta(days=9), DebtState.OVERDUE)
        assert trigger_applies(_trigger(EventKind.DAYS_AFTER_DUE, 5), debt, TODAY, NOW).applies

    def test_before_target_day(self):
        debt = _debt(TODAY - timedelta(days=3), DebtState.OVERDUE)
        assert not trigger_applies(_trigger(EventKind.DAYS_AFTER_DUE, 5), debt, TODAY, NOW).applies

    def test_requires_overdue_state(self):
        debt = _debt(TODAY - timedelta(days=9), DebtState.CURRENT)
        assert not trigger_applies(_trigger(EventKind.DAYS_AFTER_DUE, 5), debt, TODAY, NOW).applies

    def test_missing_offset_is_zero(self):
        debt = _debt(TODAY, DebtState.OVERDUE)
        assert trigger_applies(_trigger(EventKind.DAYS_AFTER_DUE), debt, TODAY, NOW).applies


class TestPaymentRegistered:
    def test_uses_payment_timestamp(self):
        paid_at = NOW - timedelta(hours=2)
        payment = Payment(debt_id="d1", amount=50, status=PaymentStatus.CONFIRMED, created_at=paid_at)
        match = trigger_applies(_trigger(EventKind.PAYMENT_REGISTERED), _debt(TODAY), TODAY, NOW, payment)
        assert match.applies
        assert match.event_date == paid_at

    def test_no_payment(self):
        assert not trigger_applies(_trigger(EventKind.PAYMENT_REGISTERED), _debt(TODAY), TODAY, NOW).applies


# ──────────────────────────────────────────────────────────────
#  Schedule arithmetic
# ──────────────────────────────────────────────────────────────

class TestSchedule:
    def test_target_dates(self):
        debt = _debt(date(2026, 3, 10))
        assert target_date(_trigger(EventKind.DAYS_BEFORE_DUE, 3), debt) == date(2026, 3, 7)
        assert target_date(_trigger(EventKind.DUE_DAY), debt) == date(2026, 3, 10)
        assert target_date(_trigger(EventKind.DAYS_AFTER_DUE, 15), debt) == date(2026, 3, 25)
        assert target_date(_trigger(EventKind.DEBT_CREATED), debt) is None

    def test_scheduled_at_send_hour_local(self):
        debt = _debt(date(2026, 3, 10))
        when = scheduled_time(_trigger(EventKind.DAYS_BEFORE_DUE, 3), debt, TODAY, "America/Santiago", 9)
        local = when.astimezone(ZoneInfo("America/Santiago"))
        assert when.tzinfo is not None
        assert (local.date(), local.hour, local.minute) == (date(2026, 3, 7), 9, 0)

    def test_event_driven_kinds_schedule_today(self):
        debt = _debt(date(2026, 3, 10))
        when = scheduled_time(_trigger(EventKind.DEBT_CREATED), debt, TODAY, "UTC", 9)
        assert when == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def test_next_evaluation_date(self):
        debt = _debt(TODAY + timedelta(days=10))
        assert next_evaluation_date(_trigger(EventKind.DUE_DAY), debt, TODAY) == TODAY + timedelta(days=10)
        assert next_evaluation_date(_trigger(EventKind.DAYS_BEFORE_DUE, 15), debt, TODAY) is None
        assert next_evaluation_date(_trigger(EventKind.DEBT_CREATED), debt, TODAY) is None
        assert next_evaluation_date(_trigger(EventKind.PAYMENT_REGISTERED), debt, TODAY) is None


# ──────────────────────────────────────────────────────────────
#  Evaluator
# ──────────────────────────────────────────────────────────────

class TestTriggerEvaluator:
    @pytest.mark.asyncio
    async def test_due_day_fires_only_on_due_date(self, store, seed):
        world = await seed(event_kind=EventKind.DUE_DAY, due_date=TODAY, state=DebtState.CURRENT)
        evaluator = TriggerEvaluator(store, "UTC")

        assert len(await evaluator.evaluate_debt(world.debt, NOW)) == 1
        assert await evaluator.evaluate_debt(world.debt, NOW - timedelta(days=1)) == []
        assert await evaluator.evaluate_debt(world.debt, NOW + timedelta(days=1)) == []

    @pytest.mark.asyncio
    async def test_firing_carries_campaign_and_node(self, store, seed):
        world = await seed()
        firings = await TriggerEvaluator(store, "UTC").evaluate_debt(world.debt, NOW)
        assert len(firings) == 1
        assert firings[0].campaign.id == world.campaign.id
        assert firings[0].node.id == "n1"
        assert firings[0].debt_id == world.debt.id

    @pytest.mark.asyncio
    async def test_paused_campaign_still_evaluated(self, store, seed):
        world = await seed(campaign_state=CampaignState.PAUSED)
        assert len(await TriggerEvaluator(store, "UTC").evaluate_debt(world.debt, NOW)) == 1

    @pytest.mark.asyncio
    async def test_draft_campaign_ignored(self, store, seed):
        world = await seed(campaign_state=CampaignState.DRAFT)
        assert await TriggerEvaluator(store, "UTC").evaluate_debt(world.debt, NOW) == []

    @pytest.mark.asyncio
    async def test_inactive_trigger_ignored(self, store, seed):
        world = await seed()
        await store.save_trigger(world.trigger.model_copy(update={"active": False}))
        assert await TriggerEvaluator(store, "UTC").evaluate_debt(world.debt, NOW) == []

    @pytest.mark.asyncio
    async def test_missing_node_skipped(self, store, seed):
        world = await seed()
        await store.save_trigger(world.trigger.model_copy(update={"node_id": "deleted"}))
        assert await TriggerEvaluator(store, "UTC").evaluate_debt(world.debt, NOW) == []

    @pytest.mark.asyncio
    async def test_wait_and_filter_nodes_skipped(self, store, seed):
        world = await seed()
        campaign = world.campaign.model_copy(update={"nodes": [
            CampaignNode(id="n1", type=NodeType.WAIT),
        ]})
        await store.save_campaign(campaign)
        assert await TriggerEvaluator(store, "UTC").evaluate_debt(world.debt, NOW) == []

    @pytest.mark.asyncio
    async def test_pending_or_fired_node_skipped(self, store, seed):
        world = await seed()
        evaluator = TriggerEvaluator(store, "UTC")
        for status in (LedgerStatus.PENDING, LedgerStatus.FIRED):
            state = WorkflowDebtState(campaign_id=world.campaign.id, debt_id=world.debt.id)
            state.set_entry("n1", LedgerEntry(status=status))
            await store.save_workflow_state(state)
            assert await evaluator.evaluate_debt(world.debt, NOW) == []

    @pytest.mark.asyncio
    async def test_failed_node_fires_again(self, store, seed):
        world = await seed()
        state = WorkflowDebtState(campaign_id=world.campaign.id, debt_id=world.debt.id)
        state.set_entry("n1", LedgerEntry(status=LedgerStatus.FAILED))
        await store.save_workflow_state(state)
        assert len(await TriggerEvaluator(store, "UTC").evaluate_debt(world.debt, NOW)) == 1

    @pytest.mark.asyncio
    async def test_future_next_evaluation_date_skips_campaign(self, store, seed):
        world = await seed()
        await store.save_workflow_state(WorkflowDebtState(
            campaign_id=world.campaign.id, debt_id=world.debt.id,
            next_evaluation_date=TODAY + timedelta(days=2),
        ))
        assert await TriggerEvaluator(store, "UTC").evaluate_debt(world.debt, NOW) == []

    @pytest.mark.asyncio
    async def test_recent_confirmed_payment(self, store, seed):
        world = await seed(event_kind=EventKind.PAYMENT_REGISTERED, state=DebtState.CURRENT)
        evaluator = TriggerEvaluator(store, "UTC")

        await store.save_payment(Payment(debt_id=world.debt.id, amount=10,
                                         status=PaymentStatus.REJECTED, created_at=NOW - timedelta(hours=1)))
        await store.save_payment(Payment(debt_id=world.debt.id, amount=10,
                                         status=PaymentStatus.CONFIRMED, created_at=NOW - timedelta(hours=30)))
        assert await evaluator.evaluate_debt(world.debt, NOW) == []

        paid_at = NOW - timedelta(hours=3)
        await store.save_payment(Payment(debt_id=world.debt.id, amount=10,
                                         status=PaymentStatus.CONFIRMED, created_at=paid_at))
        firings = await evaluator.evaluate_debt(world.debt, NOW)
        assert [f.event_date for f in firings] == [paid_at]
