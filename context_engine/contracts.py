"""
Skill result contract and sequence state models for the Context Engine.

Every skill returns a SkillResult. The state manager merges those results
into one mutable SequenceState per running sequence. All models here are
Pydantic so a skill written in any language can emit plain JSON and be
validated at the boundary.

Principles carried by these shapes:
- Pointers, not payloads: a Reference locates offloaded data, it never
  contains it.
- Results, not context dumps: summary (<100 words) + structured data.
- Update, don't append: SequenceState is mutated in place and bounded.

Usage:
    from context_engine.contracts import create_skill_result, Reference

    result = create_skill_result(
        "transcription",
        "45 min call with Jane Doe (VP Sales) at Acme.",
        {"speakers": [...], "key_quotes": [...]},
        references=[Reference(type="transcript", location="supabase://skill-outputs/...")],
    )
"""

from __future__ import annotations

import json
import math
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from context_engine.config.schema import DEFAULT_RULES, EngineRules
from context_engine.exceptions import SkillContractError


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Enums ────────────────────────────────────────────────────────────

class SkillStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ReferenceType(str, Enum):
    TRANSCRIPT = "transcript"
    ENRICHMENT = "enrichment"
    DRAFT = "draft"
    ANALYSIS = "analysis"
    RAW_RESPONSE = "raw_response"
    IMAGE = "image"
    DOCUMENT = "document"


class SkillFlag(str, Enum):
    """Closed vocabulary of hints a skill can raise for the orchestrator."""

    NEEDS_HUMAN_REVIEW = "needs_human_review"
    HIGH_VALUE = "high_value"
    RISK_DETECTED = "risk_detected"
    COMPETITOR_MENTIONED = "competitor_mentioned"
    BUDGET_DISCUSSED = "budget_discussed"
    TIMELINE_MENTIONED = "timeline_mentioned"
    CHAMPION_IDENTIFIED = "champion_identified"
    BLOCKER_IDENTIFIED = "blocker_identified"
    EXPANSION_OPPORTUNITY = "expansion_opportunity"


class SequenceType(str, Enum):
    POST_MEETING_INTELLIGENCE = "post_meeting_intelligence"
    DAILY_PIPELINE_PULSE = "daily_pipeline_pulse"
    PRE_MEETING_PREP = "pre_meeting_prep"
    STALLED_DEAL_REVIVAL = "stalled_deal_revival"
    PROSPECT_TO_CAMPAIGN = "prospect_to_campaign"
    INBOUND_QUALIFICATION = "inbound_qualification"
    CHAMPION_JOB_CHANGE = "champion_job_change"
    EVENT_FOLLOW_UP = "event_follow_up"
    CUSTOM = "custom"


class Level(str, Enum):
    """Priority of an action item, severity of a risk."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


LEVEL_RANK: dict[Level, int] = {Level.LOW: 0, Level.MEDIUM: 1, Level.HIGH: 2}


class ApprovalStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    MODIFIED = "modified"


class ApprovalChannel(str, Enum):
    SLACK = "slack"
    EMAIL = "email"
    APP = "app"


# ─── Skill Result Contract ────────────────────────────────────────────

class Reference(BaseModel):
    """Pointer to a payload stored outside the working state."""

    model_config = ConfigDict(frozen=True)

    type: ReferenceType
    location: str = Field(..., min_length=1, description="backend://container/path")
    summary: Optional[str] = None
    size_bytes: Optional[int] = None
    content_type: Optional[str] = None


class SkillHints(BaseModel):
    """Optional hints for the orchestrator."""

    model_config = ConfigDict(frozen=True)

    suggested_next_skills: list[str] = Field(default_factory=list)
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    flags: list[SkillFlag] = Field(default_factory=list)

    @field_validator("flags", mode="before")
    @classmethod
    def drop_unknown_flags(cls, v: Any) -> Any:
        # Flags outside the vocabulary are ignored rather than failing the contract
        if not isinstance(v, list):
            return v
        known = {f.value for f in SkillFlag}
        return [f for f in v if isinstance(f, (str, SkillFlag)) and str(getattr(f, "value", f)) in known]


class SkillSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: Optional[str] = None
    uri: Optional[str] = None


class SkillMeta(BaseModel):
    """Execution metadata for one skill run."""

    model_config = ConfigDict(frozen=True)

    skill_id: str
    skill_version: str = "1.0.0"
    execution_time_ms: float = 0
    tokens_used: Optional[int] = None
    model: Optional[str] = None
    sources: Optional[list[SkillSource]] = None


class SkillResult(BaseModel):
    """
    The fixed-shape value every skill returns.

    status=partial means the skill failed but still produced usable data;
    the state manager merges that data and records a recoverable failure.
    """

    model_config = ConfigDict(frozen=True)

    status: SkillStatus
    error: Optional[str] = None
    summary: str
    data: dict[str, Any] = Field(default_factory=dict)
    references: list[Reference] = Field(default_factory=list)
    hints: Optional[SkillHints] = None
    meta: SkillMeta


# ─── Entities ─────────────────────────────────────────────────────────

class _Entity(BaseModel):
    """
    Compact entity summary. Only id is required so a later skill can
    upsert a partial record (e.g. just a contact's stance).
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)


class ContactSummary(_Entity):
    name: Optional[str] = None
    role: Optional[str] = None
    company: Optional[str] = None
    stance: Optional[Literal["champion", "neutral", "blocker", "unknown"]] = None
    last_contact: Optional[str] = None


class CompanySummary(_Entity):
    name: Optional[str] = None
    size: Optional[int] = None
    industry: Optional[str] = None
    icp_score: Optional[float] = None
    key_signals: Optional[list[str]] = None


class DealSummary(_Entity):
    name: Optional[str] = None
    value: Optional[float] = None
    stage: Optional[str] = None
    days_in_stage: Optional[int] = None
    health: Optional[Literal["on_track", "at_risk", "stalled"]] = None


# ─── Findings ─────────────────────────────────────────────────────────

class ActionItem(BaseModel):
    task: str = Field(..., min_length=1)
    owner: Literal["internal", "prospect"] = "internal"
    due: str = "asap"
    priority: Level = Level.MEDIUM
    status: Literal["pending", "completed", "blocked"] = "pending"


class Risk(BaseModel):
    type: str
    description: str
    severity: Level = Level.MEDIUM
    mitigation: Optional[str] = None


class Opportunity(BaseModel):
    type: str
    description: str
    potential_value: Optional[float] = None


# ─── Sequence State ───────────────────────────────────────────────────

class SequenceTrigger(BaseModel):
    type: str
    timestamp: str = Field(default_factory=utc_now_iso)
    source: str = "manual"
    params: dict[str, Any] = Field(default_factory=dict)


class FailedSkill(BaseModel):
    skill_id: str
    error: str
    recoverable: bool
    attempted_at: str = Field(default_factory=utc_now_iso)


class StepRecord(BaseModel):
    """One merged step, in call order. Feeds the checkpoint's step_results."""

    step_index: int
    skill_key: str
    status: Literal["completed", "partial", "failed"]
    error: Optional[str] = None
    completed_at: str = Field(default_factory=utc_now_iso)


class ExecutionTracking(BaseModel):
    started_at: str = Field(default_factory=utc_now_iso)
    current_step: int = 0
    total_steps: int = 0
    completed_skills: list[str] = Field(default_factory=list)
    pending_skills: list[str] = Field(default_factory=list)
    failed_skills: list[FailedSkill] = Field(default_factory=list)
    step_history: list[StepRecord] = Field(default_factory=list)
    completed_at: Optional[str] = None


class EntitySet(BaseModel):
    contacts: list[ContactSummary] = Field(default_factory=list)
    companies: list[CompanySummary] = Field(default_factory=list)
    deals: list[DealSummary] = Field(default_factory=list)


class Findings(BaseModel):
    key_facts: list[str] = Field(default_factory=list)
    action_items: list[ActionItem] = Field(default_factory=list)
    risks: list[Risk] = Field(default_factory=list)
    opportunities: list[Opportunity] = Field(default_factory=list)


class SequenceContext(BaseModel):
    """Compact summaries only, never full payloads."""

    entities: EntitySet = Field(default_factory=EntitySet)
    findings: Findings = Field(default_factory=Findings)
    references: list[Reference] = Field(default_factory=list)


class ApprovalState(BaseModel):
    required: bool = False
    status: ApprovalStatus = ApprovalStatus.NOT_REQUIRED
    requested_at: Optional[str] = None
    responded_at: Optional[str] = None
    channel: Optional[ApprovalChannel] = None
    modifications: Optional[str] = None


class DraftOutput(BaseModel):
    type: Literal["email", "linkedin", "slack", "call_script"]
    reference: str
    summary: str
    status: Literal["draft", "approved", "sent"] = "draft"


class NotificationOutput(BaseModel):
    channel: Literal["slack", "email"]
    recipient: str
    message_ref: str
    status: Literal["pending", "sent", "failed"] = "pending"


class CRMUpdate(BaseModel):
    entity_type: Literal["contact", "company", "deal", "activity"]
    entity_id: str
    fields_updated: list[str] = Field(default_factory=list)
    status: Literal["pending", "applied", "failed"] = "pending"


class TaskOutput(BaseModel):
    id: str
    title: str
    due_date: str
    assigned_to: str
    crm_task_id: Optional[str] = None


class SequenceOutputs(BaseModel):
    drafts: list[DraftOutput] = Field(default_factory=list)
    notifications: list[NotificationOutput] = Field(default_factory=list)
    crm_updates: list[CRMUpdate] = Field(default_factory=list)
    tasks_created: list[TaskOutput] = Field(default_factory=list)


class TokenBudget(BaseModel):
    """Running estimate of how much of the per-step allowance the state uses."""

    system_prompt: int = 2000
    state_tokens: int = 0
    skill_result_tokens: int = 0
    total_used: int = 0
    per_step_ceiling: int = 3800
    over_budget: bool = False
    warnings: list[str] = Field(default_factory=list)


class SequenceState(BaseModel):
    """The single mutable object for one sequence execution."""

    sequence_id: str
    sequence_type: SequenceType = SequenceType.CUSTOM
    instance_id: str
    trigger: SequenceTrigger
    execution: ExecutionTracking = Field(default_factory=ExecutionTracking)
    context: SequenceContext = Field(default_factory=SequenceContext)
    approval: ApprovalState = Field(default_factory=ApprovalState)
    outputs: SequenceOutputs = Field(default_factory=SequenceOutputs)
    token_budget: TokenBudget = Field(default_factory=TokenBudget)


# ─── Helpers ──────────────────────────────────────────────────────────

def new_instance_id(sequence_type: SequenceType | str) -> str:
    """Unique id per run: {sequence_type}-{epoch_ms}-{random7}."""
    kind = sequence_type.value if isinstance(sequence_type, SequenceType) else sequence_type
    epoch_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"{kind}-{epoch_ms}-{uuid.uuid4().hex[:7]}"


def create_initial_sequence_state(
    sequence_id: str,
    sequence_type: SequenceType | str,
    trigger: SequenceTrigger,
    *,
    rules: EngineRules = DEFAULT_RULES,
    instance_id: Optional[str] = None,
) -> SequenceState:
    """Create an empty SequenceState for a new sequence execution."""
    budgets = rules.token_budgets
    return SequenceState(
        sequence_id=sequence_id,
        sequence_type=sequence_type,
        instance_id=instance_id or new_instance_id(sequence_type),
        trigger=trigger,
        token_budget=TokenBudget(
            system_prompt=budgets.system_prompt,
            per_step_ceiling=budgets.per_step_ceiling,
        ),
    )


def create_skill_result(
    skill_id: str,
    summary: str,
    data: dict[str, Any],
    *,
    references: Optional[list[Reference]] = None,
    hints: Optional[SkillHints | dict[str, Any]] = None,
    execution_time_ms: float = 0,
    tokens_used: Optional[int] = None,
    model: Optional[str] = None,
    sources: Optional[list[dict[str, Any]]] = None,
    skill_version: str = "1.0.0",
) -> SkillResult:
    """Build a successful SkillResult."""
    return SkillResult(
        status=SkillStatus.SUCCESS,
        summary=summary,
        data=data,
        references=references or [],
        hints=hints,
        meta=SkillMeta(
            skill_id=skill_id,
            skill_version=skill_version,
            execution_time_ms=execution_time_ms,
            tokens_used=tokens_used,
            model=model,
            sources=sources,
        ),
    )


def create_failed_skill_result(
    skill_id: str,
    error: str,
    *,
    execution_time_ms: float = 0,
    partial_data: Optional[dict[str, Any]] = None,
    skill_version: str = "1.0.0",
) -> SkillResult:
    """
    Build a failed SkillResult, or a partial one when partial_data is non-empty.
    """
    return SkillResult(
        status=SkillStatus.PARTIAL if partial_data else SkillStatus.FAILED,
        error=error,
        summary=f"Skill {skill_id} failed: {error}",
        data=partial_data or {},
        references=[],
        meta=SkillMeta(
            skill_id=skill_id,
            skill_version=skill_version,
            execution_time_ms=execution_time_ms,
        ),
    )


def validate_skill_result(result: Any) -> bool:
    """
    Structural check of a skill result, model or raw mapping.

    Checks the status enum, summary/data/references types and the
    required meta fields. Does not raise.
    """
    if isinstance(result, SkillResult):
        return True
    if not isinstance(result, Mapping):
        return False

    if result.get("status") not in {s.value for s in SkillStatus}:
        return False
    if not isinstance(result.get("summary"), str):
        return False
    if not isinstance(result.get("data"), Mapping):
        return False
    if not isinstance(result.get("references"), list):
        return False

    meta = result.get("meta")
    if not isinstance(meta, Mapping):
        return False
    if not isinstance(meta.get("skill_id"), str):
        return False
    if not isinstance(meta.get("skill_version"), str):
        return False
    elapsed = meta.get("execution_time_ms")
    if isinstance(elapsed, bool) or not isinstance(elapsed, (int, float)):
        return False

    return True


def parse_skill_result(raw: Any) -> SkillResult:
    """
    Validate a raw result and build the SkillResult model.

    Raises:
        SkillContractError: If the result does not follow the contract.
    """
    if isinstance(raw, SkillResult):
        return raw

    skill_id = None
    if isinstance(raw, Mapping) and isinstance(raw.get("meta"), Mapping):
        skill_id = raw["meta"].get("skill_id")

    if not validate_skill_result(raw):
        raise SkillContractError(
            "Skill result does not match the result contract",
            skill_id=skill_id,
        )
    try:
        return SkillResult.model_validate(dict(raw))
    except ValidationError as e:
        raise SkillContractError(
            f"Skill result failed validation: {e.error_count()} error(s)",
            skill_id=skill_id,
            details={"errors": e.errors(include_url=False)},
        ) from e


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, Enum):
        return value.value
    return str(value)


def serialize_for_tokens(content: Any) -> str:
    """Compact JSON used for every token estimate (strings pass through)."""
    if isinstance(content, str):
        return content
    if isinstance(content, BaseModel):
        content = content.model_dump(mode="json", exclude_none=True)
    return json.dumps(
        content, separators=(",", ":"), ensure_ascii=False, default=_json_default
    )


def estimate_tokens(content: Any) -> int:
    """
    Estimate token count: ceil(len(serialized) / 4).

    Empty strings and None count as 0.
    """
    if content is None:
        return 0
    return math.ceil(len(serialize_for_tokens(content)) / 4)


def compact_summary(summary: str, max_words: int = 100) -> str:
    """Cap a summary at max_words, appending '...' when truncated."""
    words = summary.split()
    if len(words) <= max_words:
        return summary
    return " ".join(words[:max_words]) + "..."
