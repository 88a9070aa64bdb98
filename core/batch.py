"""
Dunning Engine: wires the components together and runs the periodic passes.

Evaluation pass:
    storage check → overdue transitions → for each active debt:
    TriggerEvaluator → ActionGenerator → persisted ScheduledAction

Dispatch pass:
    Dispatcher.drain over due actions

Both passes are stateless and safe to run concurrently with themselves:
duplicates are stopped by the store's uniqueness guard and by conditional
status updates. Only an unreachable store aborts a pass.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Optional

from channels.base import ChannelRegistry
from config.settings import Settings, get_settings
from core.dispatcher import Dispatcher
from core.generator import ActionGenerator, GenerationStatus
from core.retry import RetryScheduler
from core.webhooks import WebhookIngestor
from database.store_base import BaseDunningStore
from guardrails.engine import GuardrailEngine
from models.schemas import Debt, DeliveryEvent, utcnow
from triggers.evaluator import TriggerEvaluator
from utils.clock import local_today

logger = structlog.get_logger()


class DunningEngine:
    """
    Owns one instance of every engine component for a store + channel registry.

    Used by the cron endpoints, the webhook endpoints and the tests.
    """

    def __init__(
        self,
        store: BaseDunningStore,
        channels: ChannelRegistry,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.channels = channels
        self._settings = settings or get_settings()

        eng = self._settings.engine
        gr = self._settings.guardrails
        self.timezone = eng.timezone

        self.guardrails = GuardrailEngine(store)
        self.evaluator = TriggerEvaluator(store, timezone=eng.timezone)
        self.generator = ActionGenerator(store, timezone=eng.timezone, send_hour=eng.send_hour)
        self.retry = RetryScheduler(store, self._settings.retry)
        self.dispatcher = Dispatcher(
            store, channels,
            guardrails=self.guardrails,
            timezone=eng.timezone,
            adapter_timeout=eng.adapter_timeout_seconds,
            dispatch_policy=gr.dispatch_policy,
            guardrail_defaults=gr.defaults,
        )
        self.webhooks = WebhookIngestor(
            store, self.retry,
            guardrails=self.guardrails,
            timezone=eng.timezone,
            retry_policy=gr.retry_policy,
            retry_permanent_failures=self._settings.retry.retry_permanent_failures,
            guardrail_defaults=gr.defaults,
            channels=channels,
        )

    # ══════════════════════════════════════════════════════════
    #  EVALUATION PASS
    # ══════════════════════════════════════════════════════════

    async def run_evaluation_pass(self, now: Optional[datetime] = None,
                                  limit: Optional[int] = None) -> dict[str, int]:
        """
        Evaluate every active debt once.

        Returns counts: {"debts", "overdue_marked", "firings", "created",
        "duplicate", "skipped", "filtered", "config_error", "errors"}
        """
        now = now or utcnow()
        eng = self._settings.engine
        stats = {"debts": 0, "overdue_marked": 0, "firings": 0, "errors": 0}
        stats.update({s.value: 0 for s in GenerationStatus})

        # Fatal: nothing below can work without the store
        await self.store.ping()

        stats["overdue_marked"] = await self.store.mark_overdue_debts(local_today(now, self.timezone))

        debts = await self.store.list_active_debts(limit or eng.evaluation_batch_limit)
        stats["debts"] = len(debts)

        semaphore = asyncio.Semaphore(max(eng.evaluation_concurrency, 1))

        async def _bounded(debt: Debt) -> None:
            async with semaphore:
                await self._evaluate_one(debt, now, stats)

        await asyncio.gather(*(_bounded(d) for d in debts))

        logger.info("evaluation_pass_complete", **stats)
        return stats

    async def _evaluate_one(self, debt: Debt, now: datetime, stats: dict[str, int]) -> None:
        try:
            firings = await self.evaluator.evaluate_debt(debt, now)
            stats["firings"] += len(firings)
            for firing in firings:
                result = await self.generator.generate(firing, now)
                stats[result.status.value] += 1
        except Exception as e:
            stats["errors"] += 1
            logger.error("debt_evaluation_failed", debt_id=debt.id,
                         error=str(e), error_type=type(e).__name__)

    # ══════════════════════════════════════════════════════════
    #  DISPATCH PASS & WEBHOOKS
    # ══════════════════════════════════════════════════════════

    async def run_dispatch_pass(self, now: Optional[datetime] = None,
                                limit: Optional[int] = None) -> dict[str, int]:
        await self.store.ping()
        return await self.dispatcher.drain(now or utcnow(), limit or self._settings.engine.dispatch_batch_limit)

    async def ingest_webhook(self, event: DeliveryEvent, now: Optional[datetime] = None) -> dict[str, Any]:
        return await self.webhooks.ingest(event, now)
