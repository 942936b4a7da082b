"""
Bounded merge rules for entities and findings.

Entities are upserted by id with no cap. Findings are capped lists that
evict one item when full:
- key facts: oldest first (FIFO)
- action items: first completed item, else lowest priority
- risks: lowest severity
- opportunities: lowest potential value (missing counts as 0)

Ties go to the oldest item, and survivors keep their insertion order.
All functions mutate the given lists in place and return whether the
item was added.
"""

from __future__ import annotations

from typing import Any, Callable, TypeVar

from pydantic import BaseModel

from context_engine.config.schema import FindingLimits
from context_engine.contracts import (
    LEVEL_RANK,
    ActionItem,
    Findings,
    Opportunity,
    Risk,
)

E = TypeVar("E", bound=BaseModel)
T = TypeVar("T", bound=BaseModel)


# ─── Entities ─────────────────────────────────────────────────────────

def upsert_entity(entities: list[E], incoming: E | dict[str, Any], model: type[E]) -> E:
    """
    Insert an entity or shallow-merge it into the one with the same id.

    Only fields the caller actually set (and that are not None) overwrite
    existing values, so a partial update never blanks out known data.
    """
    if not isinstance(incoming, model):
        incoming = model.model_validate(incoming)

    for index, existing in enumerate(entities):
        if existing.id == incoming.id:
            merged = model.model_validate({
                **existing.model_dump(),
                **incoming.model_dump(exclude_unset=True, exclude_none=True),
            })
            entities[index] = merged
            return merged

    entities.append(incoming)
    return incoming


# ─── Findings ─────────────────────────────────────────────────────────

def _evict_one(items: list[T], pick: Callable[[list[T]], int]) -> None:
    del items[pick(items)]


def _index_of_min(items: list[T], key: Callable[[T], float]) -> int:
    # min() keeps the first of equal keys, so the oldest item loses ties
    return min(range(len(items)), key=lambda i: key(items[i]))


def add_key_fact(findings: Findings, fact: str, limits: FindingLimits) -> bool:
    fact = fact.strip() if isinstance(fact, str) else ""
    if not fact or fact in findings.key_facts:
        return False
    if len(findings.key_facts) >= limits.max_key_facts:
        findings.key_facts.pop(0)
    findings.key_facts.append(fact)
    return True


def _pick_action_item(items: list[ActionItem]) -> int:
    for index, item in enumerate(items):
        if item.status == "completed":
            return index
    return _index_of_min(items, lambda item: LEVEL_RANK[item.priority])


def add_action_item(
    findings: Findings, item: ActionItem | dict[str, Any], limits: FindingLimits
) -> bool:
    if not isinstance(item, ActionItem):
        item = ActionItem.model_validate(item)

    task = item.task.strip().casefold()
    if any(existing.task.strip().casefold() == task for existing in findings.action_items):
        return False

    if len(findings.action_items) >= limits.max_action_items:
        _evict_one(findings.action_items, _pick_action_item)
    findings.action_items.append(item)
    return True


def add_risk(findings: Findings, risk: Risk | dict[str, Any], limits: FindingLimits) -> bool:
    if not isinstance(risk, Risk):
        risk = Risk.model_validate(risk)

    if any(
        r.type == risk.type and r.description == risk.description
        for r in findings.risks
    ):
        return False

    if len(findings.risks) >= limits.max_risks:
        _evict_one(
            findings.risks,
            lambda items: _index_of_min(items, lambda r: LEVEL_RANK[r.severity]),
        )
    findings.risks.append(risk)
    return True


def _opportunity_value(opportunity: Opportunity) -> float:
    return opportunity.potential_value if opportunity.potential_value is not None else 0


def add_opportunity(
    findings: Findings, opportunity: Opportunity | dict[str, Any], limits: FindingLimits
) -> bool:
    if not isinstance(opportunity, Opportunity):
        opportunity = Opportunity.model_validate(opportunity)

    if any(
        o.type == opportunity.type and o.description == opportunity.description
        for o in findings.opportunities
    ):
        return False

    if len(findings.opportunities) >= limits.max_opportunities:
        _evict_one(
            findings.opportunities,
            lambda items: _index_of_min(items, _opportunity_value),
        )
    findings.opportunities.append(opportunity)
    return True


def most_recent(items: list[Any], count: int) -> list[Any]:
    """The last `count` items, oldest first."""
    if count <= 0:
        return []
    return list(items[-count:])


def drop_completed_action_items(findings: Findings) -> int:
    before = len(findings.action_items)
    findings.action_items[:] = [
        item for item in findings.action_items if item.status != "completed"
    ]
    return before - len(findings.action_items)


def trim_key_facts(findings: Findings, keep: int) -> int:
    """Keep only the most recent `keep` key facts; returns how many were dropped."""
    overflow = len(findings.key_facts) - keep
    if overflow <= 0:
        return 0
    del findings.key_facts[:overflow]
    return overflow
