"""
Guardrail Engine: contact-frequency and quiet-period limits.

Configuration is a key/value table: global rows (owner_id NULL) overlaid
with per-owner rows, on top of the ``guardrails.defaults`` block in
settings.yaml. It is loaded once per pass with ``load_guardrail_config``
and passed explicitly to every check.

Recognised keys:
    quiet_hours_start / quiet_hours_end   "HH:MM", window may wrap midnight
    block_sundays                         bool
    blocked_weekdays                      [0..6], 0 = Monday
    blocked_dates                         ["YYYY-MM-DD", ...]
    max_messages_per_day                  int
    max_messages_per_week                 int
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, time, timedelta
from typing import Any, Optional

from database.store_base import BaseDunningStore
from models.schemas import ChannelType, GuardrailConfig, GuardrailDecision
from utils.clock import local_midnight, local_now

logger = structlog.get_logger()

SUNDAY = 6

# Older deployments stored Spanish key names
_KEY_ALIASES = {
    "bloquear_domingos": "block_sundays",
    "max_msgs_deudor_dia": "max_messages_per_day",
    "max_msgs_deudor_semana": "max_messages_per_week",
}


def _parse_time(value: Any) -> Optional[time]:
    if value in (None, ""):
        return None
    if isinstance(value, time):
        return value
    hour, _, minute = str(value).partition(":")
    return time(int(hour), int(minute or 0))


def _parse_int(value: Any) -> Optional[int]:
    if value in (None, "", 0, "0"):
        return None
    return int(value)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def build_guardrail_config(values: dict[str, Any], timezone: str) -> GuardrailConfig:
    """Turn raw key/value configuration into a GuardrailConfig."""
    values = {_KEY_ALIASES.get(k, k): v for k, v in values.items()}

    weekdays = {int(d) for d in values.get("blocked_weekdays") or []}
    if _truthy(values.get("block_sundays", False)):
        weekdays.add(SUNDAY)

    return GuardrailConfig(
        quiet_hours_start=_parse_time(values.get("quiet_hours_start")),
        quiet_hours_end=_parse_time(values.get("quiet_hours_end")),
        blocked_weekdays=sorted(weekdays),
        blocked_dates=[date.fromisoformat(str(d)) for d in values.get("blocked_dates") or []],
        max_messages_per_day=_parse_int(values.get("max_messages_per_day")),
        max_messages_per_week=_parse_int(values.get("max_messages_per_week")),
        timezone=values.get("timezone") or timezone,
    )


async def load_guardrail_config(
    store: BaseDunningStore, owner_id: Optional[str], timezone: str,
    defaults: Optional[dict[str, Any]] = None,
) -> GuardrailConfig:
    values = dict(defaults or {})
    values.update(await store.get_config_values(owner_id))
    return build_guardrail_config(values, timezone)


def in_quiet_hours(moment: time, start: time, end: time) -> bool:
    """Half-open window [start, end). A start later than end wraps past midnight."""
    if start == end:
        return False
    if start < end:
        return start <= moment < end
    return moment >= start or moment < end


class GuardrailEngine:
    """
    Decides whether a debt may be contacted right now.

    Checks run in a fixed order and the first failure wins:
    quiet hours → blocked weekday/date → daily cap → weekly cap.
    """

    def __init__(self, store: BaseDunningStore):
        self.store = store

    async def allowed(
        self, owner_id: str, debt_id: str, channel: ChannelType,
        now: datetime, config: GuardrailConfig,
    ) -> GuardrailDecision:
        local = local_now(now, config.timezone)

        if config.quiet_hours_start and config.quiet_hours_end:
            if in_quiet_hours(local.time(), config.quiet_hours_start, config.quiet_hours_end):
                return self._deny("quiet_hours", owner_id, debt_id, channel)

        if local.weekday() in config.blocked_weekdays:
            return self._deny("blocked_weekday", owner_id, debt_id, channel)
        if local.date() in config.blocked_dates:
            return self._deny("blocked_date", owner_id, debt_id, channel)

        if config.max_messages_per_day:
            sent_today = await self.store.count_history_since(debt_id, local_midnight(now, config.timezone))
            if sent_today >= config.max_messages_per_day:
                return self._deny("daily_limit", owner_id, debt_id, channel)

        if config.max_messages_per_week:
            sent_week = await self.store.count_history_since(debt_id, now - timedelta(days=7))
            if sent_week >= config.max_messages_per_week:
                return self._deny("weekly_limit", owner_id, debt_id, channel)

        return GuardrailDecision(allowed=True)

    @staticmethod
    def _deny(reason: str, owner_id: str, debt_id: str, channel: ChannelType) -> GuardrailDecision:
        logger.info("guardrail_denied", reason=reason, owner_id=owner_id,
                    debt_id=debt_id, channel=channel.value)
        return GuardrailDecision(allowed=False, reason=reason)
