"""Tests for the dispatch pass: claiming, sending, recording and ledger updates."""
from datetime import timedelta

import pytest
from conftest import NOW, OWNER, TODAY
from channels.base import ChannelRegistry, SendResult
from core.dispatcher import Dispatcher
from models.schemas import (
    ActionStatus, ChannelType, ConfigEntry, DebtState, HistoryRecord,
    HistoryStatus, LedgerStatus, NodeType,
)


async def _scheduled(engine, store, world):
    await engine.run_evaluation_pass(NOW)
    actions = await store.list_actions(debt_id=world.debt.id)
    assert len(actions) == 1
    return actions[0]


async def _ledger(store, world):
    state = await store.get_workflow_state(world.campaign.id, world.debt.id)
    return state.entry("n1")


class TestDispatchSuccess:
    @pytest.mark.asyncio
    async def test_sends_rendered_template(self, engine, store, seed, adapters):
        world = await seed()
        action = await _scheduled(engine, store, world)

        stats = await engine.run_dispatch_pass(NOW)
        assert stats["sent"] == 1

        message = adapters[ChannelType.EMAIL].sent[0]
        due = (TODAY + timedelta(days=30)).isoformat()
        assert message.destination == "ana@example.com"
        assert message.subject == "Recordatorio para Ana Pérez"
        assert message.content == f"Hola Ana Pérez, su deuda de $1500 vence el {due}."
        assert message.metadata["action_id"] == action.id

    @pytest.mark.asyncio
    async def test_records_outcome(self, engine, store, seed):
        world = await seed()
        action = await _scheduled(engine, store, world)
        await engine.run_dispatch_pass(NOW)

        done = await store.get_action(action.id)
        assert done.status == ActionStatus.DONE
        assert done.outcome == "sent"
        assert (await _ledger(store, world)).status == LedgerStatus.FIRED

        [record] = await store.list_history(world.debt.id)
        assert record.status == HistoryStatus.SENT
        assert record.external_id == "email_1"
        assert record.attempt == 1
        assert record.scheduled_action_id == action.id
        assert record.execution_id is not None

        execution = await store.get_or_create_execution(world.campaign.id, world.debt.id, OWNER)
        assert execution.id == record.execution_id
        assert execution.actions_dispatched == 1

    @pytest.mark.asyncio
    async def test_welcome_message_makes_debt_current(self, engine, store, seed):
        world = await seed()
        await _scheduled(engine, store, world)
        await engine.run_dispatch_pass(NOW)
        assert (await store.get_debt(world.debt.id)).state == DebtState.CURRENT

    @pytest.mark.asyncio
    async def test_call_dispatch(self, engine, store, seed, adapters):
        world = await seed(node_type=NodeType.CALL)
        await _scheduled(engine, store, world)
        await engine.run_dispatch_pass(NOW)

        message = adapters[ChannelType.CALL].sent[0]
        assert message.agent_id == "agent_123"
        assert message.content == ""
        assert message.variables["amount"] == "$1500"
        [record] = await store.list_history(world.debt.id)
        assert record.status == HistoryStatus.INITIATED

    @pytest.mark.asyncio
    async def test_not_due_yet(self, engine, store, seed, adapters):
        world = await seed()
        await _scheduled(engine, store, world)
        stats = await engine.run_dispatch_pass(NOW.replace(hour=8))
        assert stats["due"] == 0
        assert adapters[ChannelType.EMAIL].sent == []

    @pytest.mark.asyncio
    async def test_second_drain_sends_nothing(self, engine, store, seed, adapters):
        world = await seed()
        await _scheduled(engine, store, world)
        await engine.run_dispatch_pass(NOW)
        stats = await engine.run_dispatch_pass(NOW)
        assert stats["due"] == 0
        assert len(adapters[ChannelType.EMAIL].sent) == 1


class TestDispatchFailure:
    @pytest.mark.asyncio
    async def test_failed_send(self, engine, store, seed, adapters):
        world = await seed()
        action = await _scheduled(engine, store, world)
        adapters[ChannelType.EMAIL].results = [SendResult(success=False, error="mailbox full")]

        stats = await engine.run_dispatch_pass(NOW)
        assert stats["failed"] == 1

        cancelled = await store.get_action(action.id)
        assert cancelled.status == ActionStatus.CANCELLED
        assert cancelled.outcome == "failed: mailbox full"
        assert (await _ledger(store, world)).status == LedgerStatus.FAILED
        [record] = await store.list_history(world.debt.id)
        assert record.status == HistoryStatus.FAILED
        assert record.details["error"] == "mailbox full"
        assert (await store.get_debt(world.debt.id)).state == DebtState.NEW

    @pytest.mark.asyncio
    async def test_failed_node_can_be_regenerated(self, engine, store, seed, adapters):
        world = await seed()
        await _scheduled(engine, store, world)
        adapters[ChannelType.EMAIL].results = [SendResult(success=False, error="rejected")]
        await engine.run_dispatch_pass(NOW)

        stats = await engine.run_evaluation_pass(NOW + timedelta(hours=1))
        assert stats["created"] == 1
        assert (await _ledger(store, world)).status == LedgerStatus.PENDING

    @pytest.mark.asyncio
    async def test_retryable_failure_is_only_cancelled(self, engine, store, seed, adapters):
        world = await seed()
        action = await _scheduled(engine, store, world)
        adapters[ChannelType.EMAIL].results = [SendResult(success=False, error="HTTP 503", retryable=True)]

        stats = await engine.run_dispatch_pass(NOW)
        assert stats["failed"] == 1

        [only] = await store.list_actions(debt_id=world.debt.id)
        assert only.id == action.id
        assert only.status == ActionStatus.CANCELLED
        assert only.outcome == "failed: HTTP 503"
        [record] = await store.list_history(world.debt.id)
        assert record.status == HistoryStatus.FAILED
        assert "retry_action_id" not in record.details

    @pytest.mark.asyncio
    async def test_retry_success_fires_node(self, engine, store, seed, adapters):
        world = await seed()
        await _scheduled(engine, store, world)
        adapters[ChannelType.EMAIL].results = [SendResult(success=False, error="HTTP 503", retryable=True)]
        await engine.run_dispatch_pass(NOW)
        assert (await _ledger(store, world)).status == LedgerStatus.FAILED

        [record] = await store.list_history(world.debt.id)
        retry = await engine.retry.schedule_retry(record, NOW)
        assert retry.attempt == 2

        stats = await engine.run_dispatch_pass(NOW + timedelta(minutes=5))
        assert stats["sent"] == 1
        assert (await _ledger(store, world)).status == LedgerStatus.FIRED

    @pytest.mark.asyncio
    async def test_timeout_is_a_failure(self, engine, store, seed, adapters):
        world = await seed()
        action = await _scheduled(engine, store, world)
        adapters[ChannelType.EMAIL].delay = 1.0

        stats = await engine.run_dispatch_pass(NOW)
        assert stats["failed"] == 1
        assert (await store.get_action(action.id)).status == ActionStatus.CANCELLED
        history = await store.list_history(world.debt.id)
        assert history[0].details["error"] == "timeout"

    @pytest.mark.asyncio
    async def test_unexpected_error_reverts_to_pending(self, engine, store, seed, adapters):
        world = await seed()
        action = await _scheduled(engine, store, world)
        adapters[ChannelType.EMAIL].error = RuntimeError("socket exploded")

        stats = await engine.run_dispatch_pass(NOW)
        assert stats["errors"] == 1

        reverted = await store.get_action(action.id)
        assert reverted.status == ActionStatus.PENDING
        assert (await _ledger(store, world)).status == LedgerStatus.PENDING
        [record] = await store.list_history(world.debt.id)
        assert record.status == HistoryStatus.FAILED
        assert record.details["error_type"] == "RuntimeError"

    @pytest.mark.asyncio
    async def test_error_on_one_action_does_not_stop_batch(self, engine, store, seed, adapters):
        email = await seed(owner_id="owner_a")
        sms = await seed(owner_id="owner_b", node_type=NodeType.SMS)
        await engine.run_evaluation_pass(NOW)
        adapters[ChannelType.EMAIL].error = RuntimeError("boom")

        stats = await engine.run_dispatch_pass(NOW)
        assert stats["errors"] == 1
        assert stats["sent"] == 1
        assert len(adapters[ChannelType.SMS].sent) == 1
        assert (await store.list_history(sms.debt.id))[0].status == HistoryStatus.SENT
        assert (await store.list_actions(debt_id=email.debt.id))[0].status == ActionStatus.PENDING

    @pytest.mark.asyncio
    async def test_missing_adapter(self, store, seed, engine):
        world = await seed(node_type=NodeType.SMS)
        action = await _scheduled(engine, store, world)

        dispatcher = Dispatcher(store, ChannelRegistry(), timezone="UTC")
        stats = await dispatcher.drain(NOW)
        assert stats["failed"] == 1
        assert (await store.get_action(action.id)).outcome.startswith("failed: no adapter")

    @pytest.mark.asyncio
    async def test_lost_claim_skips(self, store, seed, engine, registry, adapters, monkeypatch):
        world = await seed()
        action = await _scheduled(engine, store, world)
        stale = await store.list_due_actions(NOW)
        await store.transition_action(action.id, ActionStatus.PENDING, ActionStatus.RUNNING)

        async def stale_listing(now, limit=100):
            return stale

        monkeypatch.setattr(store, "list_due_actions", stale_listing)
        stats = await Dispatcher(store, registry, timezone="UTC").drain(NOW)
        assert stats["lost"] == 1
        assert adapters[ChannelType.EMAIL].sent == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("final_state", [DebtState.PAID, DebtState.CANCELLED])
    async def test_inactive_debt_is_not_contacted(self, engine, store, seed, adapters, final_state):
        world = await seed()
        action = await _scheduled(engine, store, world)
        assert await store.transition_debt_state(world.debt.id, [world.debt.state], final_state)

        stats = await engine.run_dispatch_pass(NOW)
        assert stats["skipped"] == 1
        assert stats["sent"] == 0
        assert adapters[ChannelType.EMAIL].sent == []

        cancelled = await store.get_action(action.id)
        assert cancelled.status == ActionStatus.CANCELLED
        assert cancelled.outcome == "debt_inactive"
        assert cancelled.dedup_key is None
        assert (await _ledger(store, world)).status == LedgerStatus.FAILED
        assert await store.list_history(world.debt.id) == []

    @pytest.mark.asyncio
    async def test_queued_retry_skipped_after_payment(self, engine, store, seed):
        world = await seed()
        await _scheduled(engine, store, world)
        await engine.run_dispatch_pass(NOW)
        [record] = await store.list_history(world.debt.id)
        retry = await engine.retry.schedule_retry(record, NOW)
        assert await store.transition_debt_state(world.debt.id, [DebtState.CURRENT], DebtState.PAID)

        stats = await engine.run_dispatch_pass(NOW + timedelta(hours=1))
        assert stats["skipped"] == 1
        assert (await store.get_action(retry.id)).outcome == "debt_inactive"


class TestDispatchGuardrails:
    async def _over_daily_cap(self, store, world):
        await store.set_config(ConfigEntry(key="max_messages_per_day", value=1, owner_id=OWNER))
        await store.add_history(HistoryRecord(
            owner_id=OWNER, debt_id=world.debt.id, channel=ChannelType.SMS,
            status=HistoryStatus.SENT, created_at=NOW - timedelta(hours=1),
        ))

    @pytest.mark.asyncio
    async def test_log_policy_sends_anyway(self, engine, store, seed, adapters):
        world = await seed()
        await _scheduled(engine, store, world)
        await self._over_daily_cap(store, world)

        stats = await engine.run_dispatch_pass(NOW)
        assert stats["sent"] == 1
        assert len(adapters[ChannelType.EMAIL].sent) == 1
        record = [h for h in await store.list_history(world.debt.id) if h.scheduled_action_id][0]
        assert record.details["guardrail"] == {"allowed": False, "reason": "daily_limit", "enforced": False}

    @pytest.mark.asyncio
    async def test_block_policy_cancels(self, engine, store, seed, registry, adapters):
        world = await seed()
        action = await _scheduled(engine, store, world)
        await self._over_daily_cap(store, world)

        dispatcher = Dispatcher(store, registry, timezone="UTC", dispatch_policy="block")
        stats = await dispatcher.drain(NOW)
        assert stats["blocked"] == 1
        assert adapters[ChannelType.EMAIL].sent == []

        cancelled = await store.get_action(action.id)
        assert cancelled.status == ActionStatus.CANCELLED
        assert cancelled.outcome == "guardrail_blocked: daily_limit"
        assert (await _ledger(store, world)).status == LedgerStatus.FAILED

        blocked = [h for h in await store.list_history(world.debt.id) if h.guardrail_blocked]
        assert len(blocked) == 1
        assert blocked[0].status == HistoryStatus.BLOCKED
