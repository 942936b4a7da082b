"""
Best-effort extraction of entities and findings from a skill's data.

Skills do not declare their findings explicitly; the state manager reads
a few well-known keys of SkillResult.data (contacts, speakers, company,
deal, key_quotes, action_items, objections) plus the hint flags and turns
them into entity summaries and findings.

Extraction never raises: an item that does not fit is skipped and logged
at debug level.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Optional

from pydantic import ValidationError

from context_engine.contracts import (
    ActionItem,
    CompanySummary,
    ContactSummary,
    DealSummary,
    EntitySet,
    Findings,
    Level,
    Opportunity,
    Risk,
    SkillFlag,
    SkillHints,
)

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    return _SLUG_RE.sub("-", text.strip().lower()).strip("-")


# ─── Flag → finding table ─────────────────────────────────────────────

FlagFinding = Optional[Callable[[], Risk | Opportunity]]

FLAG_FINDINGS: dict[SkillFlag, FlagFinding] = {
    SkillFlag.COMPETITOR_MENTIONED: lambda: Risk(
        type="competitor",
        description="Competitor mentioned in conversation",
        severity=Level.MEDIUM,
    ),
    SkillFlag.BLOCKER_IDENTIFIED: lambda: Risk(
        type="blocker",
        description="Blocker identified in conversation",
        severity=Level.HIGH,
    ),
    SkillFlag.RISK_DETECTED: lambda: Risk(
        type="flagged",
        description="Risk flagged by skill",
        severity=Level.MEDIUM,
    ),
    SkillFlag.HIGH_VALUE: lambda: Opportunity(
        type="high_value",
        description="High value opportunity identified",
    ),
    SkillFlag.EXPANSION_OPPORTUNITY: lambda: Opportunity(
        type="expansion",
        description="Expansion opportunity identified",
    ),
    SkillFlag.NEEDS_HUMAN_REVIEW: None,
    SkillFlag.BUDGET_DISCUSSED: None,
    SkillFlag.TIMELINE_MENTIONED: None,
    SkillFlag.CHAMPION_IDENTIFIED: None,
}


# ─── Entities ─────────────────────────────────────────────────────────

def _company_name(data: dict[str, Any]) -> Optional[str]:
    company = data.get("company")
    if isinstance(company, str) and company:
        return company
    if isinstance(company, dict) and company.get("name"):
        return str(company["name"])
    name = data.get("company_name")
    return str(name) if name else None


def _present(**fields: Any) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


def _list_of(data: dict[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    return value if isinstance(value, list) else []


def extract_entities(data: dict[str, Any]) -> EntitySet:
    """Contacts, companies and deals mentioned in a result's data."""
    found = EntitySet()

    for contact in _list_of(data, "contacts"):
        if not isinstance(contact, dict):
            continue
        if not isinstance(contact.get("id"), str) or not isinstance(contact.get("name"), str):
            continue
        try:
            found.contacts.append(ContactSummary.model_validate(contact))
        except ValidationError as e:
            logger.debug(f"Skipping contact {contact.get('id')}: {e.error_count()} invalid field(s)")

    company_name = _company_name(data)
    for speaker in _list_of(data, "speakers"):
        if not isinstance(speaker, dict) or not speaker.get("name") or not speaker.get("role"):
            continue
        name = str(speaker["name"])
        found.contacts.append(ContactSummary(
            id=f"speaker-{slugify(name)}",
            name=name,
            role=str(speaker["role"]),
            company=company_name,
        ))

    company = data.get("company")
    if isinstance(company, dict) and company.get("name"):
        try:
            found.companies.append(CompanySummary.model_validate(_present(
                id=company.get("id") or f"company-{slugify(str(company['name']))}",
                name=company["name"],
                size=company.get("employee_count") or company.get("size"),
                industry=company.get("industry"),
                icp_score=company.get("icp_score", data.get("icp_score")),
                key_signals=company.get("key_signals"),
            )))
        except ValidationError as e:
            logger.debug(f"Skipping company {company.get('name')}: {e.error_count()} invalid field(s)")

    deal = data.get("deal")
    if isinstance(deal, dict) and deal.get("name"):
        try:
            found.deals.append(DealSummary.model_validate(_present(
                id=deal.get("id") or f"deal-{slugify(str(deal['name']))}",
                name=deal["name"],
                value=deal.get("value"),
                stage=deal.get("stage"),
                days_in_stage=deal.get("days_in_stage"),
                health=deal.get("health"),
            )))
        except ValidationError as e:
            logger.debug(f"Skipping deal {deal.get('name')}: {e.error_count()} invalid field(s)")

    return found


# ─── Findings ─────────────────────────────────────────────────────────

def _level(value: Any) -> Level:
    try:
        return Level(value)
    except ValueError:
        return Level.MEDIUM


def extract_findings(data: dict[str, Any], hints: Optional[SkillHints] = None) -> Findings:
    """
    Key facts, action items, risks and opportunities from a result.

    The returned Findings is uncapped; limits apply when the manager
    merges it into the sequence state.
    """
    found = Findings()

    for quote in _list_of(data, "key_quotes"):
        if isinstance(quote, str) and quote.strip():
            found.key_facts.append(quote)
        elif isinstance(quote, dict) and quote.get("text"):
            found.key_facts.append(f'{quote.get("speaker") or "Unknown"}: "{quote["text"]}"')

    for item in _list_of(data, "action_items"):
        if not isinstance(item, dict) or not item.get("task"):
            continue
        try:
            found.action_items.append(ActionItem(
                task=str(item["task"]),
                owner=item.get("owner") or "internal",
                due=str(item.get("due") or "asap"),
                priority=_level(item.get("priority") or Level.MEDIUM),
                status="pending",
            ))
        except ValidationError as e:
            logger.debug(f"Skipping action item {item.get('task')!r}: {e.error_count()} invalid field(s)")

    for objection in _list_of(data, "objections"):
        if isinstance(objection, dict):
            description = objection.get("objection") or objection.get("description")
            if not description:
                continue
            mitigation = objection.get("mitigation")
            found.risks.append(Risk(
                type="objection",
                description=str(description),
                severity=_level(objection.get("severity") or Level.MEDIUM),
                mitigation=str(mitigation) if mitigation else None,
            ))
        elif isinstance(objection, str) and objection.strip():
            found.risks.append(Risk(type="objection", description=objection))

    if hints is not None:
        for flag in hints.flags:
            factory = FLAG_FINDINGS.get(flag)
            if factory is None:
                continue
            finding = factory()
            if isinstance(finding, Risk):
                found.risks.append(finding)
            else:
                found.opportunities.append(finding)

    return found
