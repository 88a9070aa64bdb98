"""
Node filter evaluator: decides whether a debt passes a campaign node's filters.

A NodeFilter is flattened into simple (field, operator, value) conditions
evaluated against a "facts" dict describing the debt:
    {"state": "overdue", "amount": 1500.0, "days_overdue": 12,
     "contact_types": ["email", "phone"]}
"""
from __future__ import annotations

import operator as op
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable

from models.schemas import Contact, Debt, NodeFilter


OPERATORS: dict[str, Any] = {
    "gte": op.ge,
    "lte": op.le,
    "in": lambda a, b: a in b,
    "intersects": lambda a, b: bool(set(a or ()) & set(b)),
}


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any

    def describe(self) -> str:
        return f"{self.field} {self.operator} {self.value!r}"


def filter_to_conditions(node_filter: NodeFilter) -> list[Condition]:
    """Unset predicates are dropped; an empty filter yields no conditions."""
    conditions: list[Condition] = []
    if node_filter.debt_states:
        conditions.append(Condition("state", "in", [s.value for s in node_filter.debt_states]))
    if node_filter.amount_min is not None:
        conditions.append(Condition("amount", "gte", node_filter.amount_min))
    if node_filter.amount_max is not None:
        conditions.append(Condition("amount", "lte", node_filter.amount_max))
    if node_filter.days_overdue_min is not None:
        conditions.append(Condition("days_overdue", "gte", node_filter.days_overdue_min))
    if node_filter.days_overdue_max is not None:
        conditions.append(Condition("days_overdue", "lte", node_filter.days_overdue_max))
    if node_filter.contact_types:
        conditions.append(Condition("contact_types", "intersects", [t.value for t in node_filter.contact_types]))
    return conditions


def debt_facts(debt: Debt, contacts: Iterable[Contact], today: date) -> dict[str, Any]:
    return {
        "state": debt.state.value,
        "amount": debt.amount,
        "days_overdue": debt.days_overdue(today),
        "contact_types": sorted({c.type.value for c in contacts}),
    }


def evaluate_condition(condition: Condition, facts: dict[str, Any]) -> bool:
    """Evaluate a single condition against facts."""
    fn = OPERATORS.get(condition.operator)
    if fn is None:
        return False
    try:
        return fn(facts.get(condition.field), condition.value)
    except TypeError:
        return False


def first_failing(filters: Iterable[NodeFilter], facts: dict[str, Any]) -> Condition | None:
    """Return the first condition the facts do not satisfy, or None if all pass (AND logic)."""
    for node_filter in filters:
        for condition in filter_to_conditions(node_filter):
            if not evaluate_condition(condition, facts):
                return condition
    return None
