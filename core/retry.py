"""
Retry Scheduler: follow-up actions for failed deliveries.

Each retry is a new pending ScheduledAction linked to its predecessor
(``retry_of_id`` / ``retry_of_attempt``). Retries skip the node ledger but
still pass the store's uniqueness guard: their dedup key carries the
attempt number, so a replayed callback cannot create the same retry twice.

    backoff(n) = min(base * 2**n, cap)

Attempt n failing schedules attempt n+1 after backoff(n), until n reaches
the policy's max_attempts.
"""
from __future__ import annotations

import uuid
import structlog
from datetime import datetime, timedelta
from typing import Optional

from config.settings import RetrySettings
from core.errors import DuplicateScheduledActionError
from database.store_base import BaseDunningStore
from models.schemas import (
    ActionStatus, ChannelType, HistoryRecord, RetryPolicy, ScheduledAction, utcnow,
)

logger = structlog.get_logger()


def backoff_seconds(attempt: int, base: int, cap: int) -> int:
    return min(base * (2 ** attempt), cap)


class RetryScheduler:
    def __init__(self, store: BaseDunningStore, settings: Optional[RetrySettings] = None):
        self.store = store
        self.settings = settings or RetrySettings()

    async def policy(self, owner_id: Optional[str], channel: ChannelType) -> RetryPolicy:
        """Settings defaults overridden by ``max_attempts_<channel>`` config rows."""
        values = await self.store.get_config_values(owner_id)
        max_attempts = values.get(
            f"max_attempts_{channel.value}",
            self.settings.max_attempts.get(channel.value, 1),
        )
        return RetryPolicy(
            max_attempts=int(max_attempts),
            backoff_base_seconds=int(values.get("retry_backoff_base_seconds",
                                                self.settings.backoff_base_seconds)),
            backoff_cap_seconds=int(values.get("retry_backoff_cap_seconds",
                                               self.settings.backoff_cap_seconds)),
        )

    async def schedule_retry(
        self, record: HistoryRecord, now: datetime,
    ) -> Optional[ScheduledAction]:
        """
        Create the next attempt for the action behind ``record``.

        Returns None when there is nothing to retry: the predecessor is gone,
        the policy is exhausted, or the retry already exists.
        """
        if not record.scheduled_action_id:
            return None
        previous = await self.store.get_action(record.scheduled_action_id)
        if previous is None:
            logger.warning("retry_predecessor_missing", history_id=record.id,
                           action_id=record.scheduled_action_id)
            return None

        policy = await self.policy(previous.owner_id, previous.channel)
        if previous.attempt >= policy.max_attempts:
            logger.info("retry_exhausted", action_id=previous.id, attempt=previous.attempt,
                        max_attempts=policy.max_attempts)
            return None

        attempt = previous.attempt + 1
        delay = backoff_seconds(previous.attempt, policy.backoff_base_seconds, policy.backoff_cap_seconds)
        retry = previous.model_copy(update={
            "id": str(uuid.uuid4()),
            "status": ActionStatus.PENDING,
            "scheduled_time": now + timedelta(seconds=delay),
            "attempt": attempt,
            "retry_of_id": previous.id,
            "retry_of_attempt": previous.attempt,
            "outcome": "",
            "created_at": utcnow(),
            "updated_at": utcnow(),
        })

        try:
            await self.store.insert_action(retry)
        except DuplicateScheduledActionError as e:
            logger.info("retry_duplicate", dedup_key=e.dedup_key)
            return None

        logger.info("retry_scheduled", action_id=retry.id, retry_of_id=previous.id,
                    attempt=attempt, delay_s=delay)
        return retry
