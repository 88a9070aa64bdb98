"""Tests for scheduled-action generation and the evaluation pass."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from conftest import NOW, OWNER, TODAY
from core.errors import StorageUnavailableError
from core.generator import ActionGenerator, GenerationStatus, format_amount, resolve_contact
from models.schemas import (
    ActionStatus, CampaignEdge, CampaignNode, ChannelType, Contact, ContactType,
    DebtState, EventKind, LedgerStatus, NodeConfig, NodeFilter, NodeType,
    ScheduledAction, WorkflowDebtState,
)
from triggers.evaluator import TriggerEvaluator


async def _firing(store, world, now=NOW):
    firings = await TriggerEvaluator(store, "UTC").evaluate_debt(world.debt, now)
    assert len(firings) == 1
    return firings[0]


@pytest.fixture
def generator(store):
    return ActionGenerator(store, timezone="UTC", send_hour=9)


class TestHelpers:
    def test_format_amount(self):
        assert format_amount(1500) == "$1500"
        assert format_amount(1500.5) == "$1500.50"

    def test_resolve_contact_prefers_preferred(self):
        contacts = [
            Contact(debtor_id="p", type=ContactType.PHONE, value="+111"),
            Contact(debtor_id="p", type=ContactType.PHONE, value="+222", preferred=True),
            Contact(debtor_id="p", type=ContactType.EMAIL, value="a@example.com"),
        ]
        assert resolve_contact(contacts, ChannelType.SMS).value == "+222"
        assert resolve_contact(contacts, ChannelType.CALL).value == "+222"
        assert resolve_contact(contacts, ChannelType.EMAIL).value == "a@example.com"
        assert resolve_contact(contacts[:2], ChannelType.EMAIL) is None


class TestGenerate:
    @pytest.mark.asyncio
    async def test_creates_action_and_ledger_entry(self, store, seed, generator):
        world = await seed()
        result = await generator.generate(await _firing(store, world), NOW)

        assert result.status == GenerationStatus.CREATED
        action = result.action
        assert action.channel == ChannelType.EMAIL
        assert action.destination == "ana@example.com"
        assert action.template_id == world.templates[ChannelType.EMAIL].id
        assert action.scheduled_time == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        assert action.status == ActionStatus.PENDING
        assert action.attempt == 1
        assert action.variables == {
            "name": "Ana Pérez",
            "amount": "$1500",
            "due_date": (TODAY + timedelta(days=30)).isoformat(),
            "days_overdue": "0",
        }

        state = await store.get_workflow_state(world.campaign.id, world.debt.id)
        entry = state.entry("n1")
        assert entry.status == LedgerStatus.PENDING
        assert entry.scheduled_action_id == action.id
        assert entry.event_kind == EventKind.DEBT_CREATED
        assert state.last_node_id == "n1"
        assert state.next_evaluation_date is None

    @pytest.mark.asyncio
    async def test_default_debtor_name(self, store, seed, generator):
        world = await seed(debtor_name="")
        result = await generator.generate(await _firing(store, world), NOW)
        assert result.action.variables["name"] == "Customer"

    @pytest.mark.asyncio
    async def test_days_after_due_scheduled_on_target_date(self, store, seed, generator):
        world = await seed(event_kind=EventKind.DAYS_AFTER_DUE, offset_days=5,
                           due_date=TODAY - timedelta(days=8), state=DebtState.OVERDUE, node_type=NodeType.SMS)
        result = await generator.generate(await _firing(store, world), NOW)
        assert result.status == GenerationStatus.CREATED
        assert result.action.scheduled_time.date() == TODAY - timedelta(days=3)
        assert result.action.destination == "+56912345678"
        assert result.action.variables["days_overdue"] == "8"

    @pytest.mark.asyncio
    async def test_due_day_records_next_evaluation_date(self, store, seed, generator):
        world = await seed(event_kind=EventKind.DUE_DAY, due_date=TODAY, state=DebtState.CURRENT)
        await generator.generate(await _firing(store, world), NOW)
        state = await store.get_workflow_state(world.campaign.id, world.debt.id)
        assert state.next_evaluation_date == TODAY

    @pytest.mark.asyncio
    async def test_call_node_uses_agent(self, store, seed, generator):
        world = await seed(node_type=NodeType.CALL)
        result = await generator.generate(await _firing(store, world), NOW)
        assert result.action.channel == ChannelType.CALL
        assert result.action.agent_id == "agent_123"
        assert result.action.template_id is None
        assert result.action.voice_config == {"voice": "es-CL"}

    @pytest.mark.asyncio
    async def test_call_without_phone_still_created(self, store, seed, generator):
        world = await seed(node_type=NodeType.CALL, contact_types=(ContactType.EMAIL,))
        result = await generator.generate(await _firing(store, world), NOW)
        assert result.status == GenerationStatus.CREATED
        assert result.action.destination == ""


class TestPreconditions:
    @pytest.mark.asyncio
    async def test_debt_no_longer_new(self, store, seed, generator):
        world = await seed()
        firing = await _firing(store, world)
        await store.transition_debt_state(world.debt.id, [DebtState.NEW], DebtState.CURRENT)
        result = await generator.generate(firing, NOW)
        assert result.status == GenerationStatus.SKIPPED
        assert await store.list_actions(debt_id=world.debt.id) == []

    @pytest.mark.asyncio
    async def test_debt_paid_meanwhile(self, store, seed, generator):
        world = await seed()
        firing = await _firing(store, world)
        await store.save_debt(world.debt.model_copy(update={"state": DebtState.PAID}))
        assert (await generator.generate(firing, NOW)).status == GenerationStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_node_removed_meanwhile(self, store, seed, generator):
        world = await seed()
        firing = await _firing(store, world)
        await store.save_campaign(world.campaign.model_copy(update={"nodes": []}))
        assert (await generator.generate(firing, NOW)).status == GenerationStatus.SKIPPED


class TestConfigurationErrors:
    @pytest.mark.asyncio
    async def test_email_node_without_template(self, store, seed, generator):
        world = await seed(node_config=NodeConfig())
        result = await generator.generate(await _firing(store, world), NOW)
        assert result.status == GenerationStatus.CONFIG_ERROR
        assert "template_id" in result.reason

    @pytest.mark.asyncio
    async def test_unknown_template(self, store, seed, generator):
        world = await seed(node_config=NodeConfig(template_id="nope"))
        result = await generator.generate(await _firing(store, world), NOW)
        assert result.status == GenerationStatus.CONFIG_ERROR

    @pytest.mark.asyncio
    async def test_call_without_agent(self, store, seed, generator):
        world = await seed(node_type=NodeType.CALL, node_config=NodeConfig())
        result = await generator.generate(await _firing(store, world), NOW)
        assert result.status == GenerationStatus.CONFIG_ERROR

    @pytest.mark.asyncio
    async def test_missing_contact(self, store, seed, generator):
        world = await seed(node_type=NodeType.SMS, contact_types=(ContactType.EMAIL,))
        result = await generator.generate(await _firing(store, world), NOW)
        assert result.status == GenerationStatus.CONFIG_ERROR
        assert await store.get_workflow_state(world.campaign.id, world.debt.id) is None


class TestFilters:
    @pytest.mark.asyncio
    async def test_node_filter(self, store, seed, generator):
        world = await seed(node_config=None)
        node = world.campaign.nodes[0]
        node.config.filters = NodeFilter(amount_min=5000)
        await store.save_campaign(world.campaign)

        result = await generator.generate(await _firing(store, world), NOW)
        assert result.status == GenerationStatus.FILTERED
        assert result.reason == "amount gte 5000"

    @pytest.mark.asyncio
    async def test_upstream_filter_node(self, store, seed, generator):
        world = await seed()
        campaign = world.campaign.model_copy(deep=True)
        campaign.nodes.append(CampaignNode(id="f1", type=NodeType.FILTER, config=NodeConfig(
            filters=NodeFilter(debt_states=[DebtState.OVERDUE]),
        )))
        campaign.edges.append(CampaignEdge(source="f1", target="n1"))
        await store.save_campaign(campaign)

        result = await generator.generate(await _firing(store, world), NOW)
        assert result.status == GenerationStatus.FILTERED

    @pytest.mark.asyncio
    async def test_unconnected_filter_node_ignored(self, store, seed, generator):
        world = await seed()
        campaign = world.campaign.model_copy(deep=True)
        campaign.nodes.append(CampaignNode(id="f1", type=NodeType.FILTER, config=NodeConfig(
            filters=NodeFilter(debt_states=[DebtState.OVERDUE]),
        )))
        await store.save_campaign(campaign)

        result = await generator.generate(await _firing(store, world), NOW)
        assert result.status == GenerationStatus.CREATED

    @pytest.mark.asyncio
    async def test_contact_type_filter(self, store, seed, generator):
        world = await seed(contact_types=(ContactType.EMAIL,))
        world.campaign.nodes[0].config.filters = NodeFilter(contact_types=[ContactType.PHONE])
        await store.save_campaign(world.campaign)
        result = await generator.generate(await _firing(store, world), NOW)
        assert result.status == GenerationStatus.FILTERED


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_second_generation_is_duplicate(self, store, seed, generator):
        world = await seed()
        firing = await _firing(store, world)
        assert (await generator.generate(firing, NOW)).status == GenerationStatus.CREATED
        assert (await generator.generate(firing, NOW)).status == GenerationStatus.DUPLICATE
        assert len(await store.list_actions(debt_id=world.debt.id)) == 1

    @pytest.mark.asyncio
    async def test_dedup_survives_campaign_edit(self, store, seed, generator):
        world = await seed()
        firing = await _firing(store, world)
        await generator.generate(firing, NOW)

        # Campaign edited and its workflow state rebuilt from scratch
        edited = world.campaign.model_copy(deep=True)
        edited.nodes[0].label = "Recordatorio v2"
        await store.save_campaign(edited)
        await store.save_workflow_state(WorkflowDebtState(campaign_id=edited.id, debt_id=world.debt.id))

        refired = await _firing(store, world)
        result = await generator.generate(refired, NOW)
        assert result.status == GenerationStatus.DUPLICATE
        assert len(await store.list_actions(debt_id=world.debt.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_generation_creates_one_action(self, store, seed, generator):
        world = await seed()
        firing = await _firing(store, world)
        results = await asyncio.gather(
            generator.generate(firing, NOW),
            generator.generate(firing, NOW),
        )
        assert sorted(r.status.value for r in results) == ["created", "duplicate"]
        assert len(await store.list_actions(debt_id=world.debt.id)) == 1

    @pytest.mark.asyncio
    async def test_legacy_action_superseded(self, store, seed, generator):
        world = await seed()
        legacy = await store.insert_action(ScheduledAction(
            owner_id=OWNER, debt_id=world.debt.id, debtor_id=world.debtor.id,
            campaign_id=world.campaign.id, node_id=None, channel=ChannelType.EMAIL,
            scheduled_time=NOW,
        ))
        result = await generator.generate(await _firing(store, world), NOW)
        assert result.status == GenerationStatus.CREATED

        old = await store.get_action(legacy.id)
        assert old.status == ActionStatus.CANCELLED
        assert old.outcome == "superseded"


class TestEvaluationPass:
    @pytest.mark.asyncio
    async def test_debt_created_is_idempotent_within_a_day(self, store, seed, engine):
        world = await seed()

        first = await engine.run_evaluation_pass(NOW)
        assert first["created"] == 1
        actions = await store.list_actions(debt_id=world.debt.id)
        assert [a.scheduled_time for a in actions] == [datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)]

        second = await engine.run_evaluation_pass(NOW + timedelta(hours=3))
        assert second["created"] == 0
        assert second["firings"] == 0
        assert len(await store.list_actions(debt_id=world.debt.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_passes_create_one_action(self, store, seed, engine):
        world = await seed()
        await asyncio.gather(engine.run_evaluation_pass(NOW), engine.run_evaluation_pass(NOW))
        assert len(await store.list_actions(debt_id=world.debt.id)) == 1

    @pytest.mark.asyncio
    async def test_marks_past_due_debts_overdue(self, store, seed, engine):
        world = await seed(event_kind=EventKind.DAYS_AFTER_DUE, offset_days=0,
                           due_date=TODAY - timedelta(days=1), state=DebtState.CURRENT)
        stats = await engine.run_evaluation_pass(NOW)
        assert stats["overdue_marked"] == 1
        assert stats["created"] == 1
        assert (await store.get_debt(world.debt.id)).state == DebtState.OVERDUE

    @pytest.mark.asyncio
    async def test_one_failing_debt_does_not_stop_the_pass(self, store, seed, engine, monkeypatch):
        bad = await seed(owner_id="owner_bad")
        good = await seed()
        original = engine.evaluator.evaluate_debt

        async def flaky(debt, now):
            if debt.id == bad.debt.id:
                raise RuntimeError("boom")
            return await original(debt, now)

        monkeypatch.setattr(engine.evaluator, "evaluate_debt", flaky)
        stats = await engine.run_evaluation_pass(NOW)
        assert stats["errors"] == 1
        assert stats["created"] == 1
        assert len(await store.list_actions(debt_id=good.debt.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrency_setting(self, store, seed, engine, settings):
        settings.engine.evaluation_concurrency = 4
        for i in range(6):
            await seed(owner_id=f"owner_{i}")
        stats = await engine.run_evaluation_pass(NOW)
        assert stats["debts"] == 6
        assert stats["created"] == 6

    @pytest.mark.asyncio
    async def test_unavailable_store_aborts(self, store, engine):
        store.available = False
        with pytest.raises(StorageUnavailableError):
            await engine.run_evaluation_pass(NOW)
