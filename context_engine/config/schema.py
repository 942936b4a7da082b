"""
Pydantic configuration schema for the Sequence Context Engine.

The rules that bound a sequence's working state (finding caps, token
budgets, compaction triggers) live in a YAML file that conforms to
EngineRules. Every value has a default, so an engine with no config file
behaves exactly like one loaded from config/engine.yaml.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class BackendKind(str, Enum):
    """Where the compactor writes full payloads."""
    SUPABASE_STORAGE = "supabase_storage"
    S3 = "s3"
    DATABASE = "database"


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------

class FindingLimits(BaseModel):
    """Hard caps per finding category."""
    max_key_facts: int = Field(10, ge=1)
    max_action_items: int = Field(10, ge=1)
    max_risks: int = Field(5, ge=1)
    max_opportunities: int = Field(5, ge=1)


class TokenBudgets(BaseModel):
    """
    Token allowance per context component.

    per_step_ceiling is the sum a single orchestrator step should stay under:
    cached system prompt + sequence state + skill context + skill result.
    """
    system_prompt: int = Field(2000, ge=0)
    sequence_state: int = Field(500, ge=1)
    skill_context: int = Field(1000, ge=1)
    skill_result: int = Field(300, ge=1)
    per_step_ceiling: int = Field(3800, ge=1)


class CompactionTriggers(BaseModel):
    """Thresholds that make the state manager compact the state."""
    key_facts_exceed: int = Field(10, ge=1)
    references_exceed: int = Field(
        20, ge=1, description="References kept in memory after archival"
    )
    strict_archive: bool = Field(
        False,
        description=(
            "Keep references in memory when the archive write fails "
            "instead of trimming them"
        ),
    )


class StorageConfig(BaseModel):
    """
    Storage configuration supplied by the caller when building a compactor.

    organization_id scopes storage paths only. Access control is enforced
    by the backing store, not here.
    """
    backend: BackendKind = BackendKind.SUPABASE_STORAGE
    bucket: Optional[str] = None
    table: Optional[str] = None
    organization_id: str = Field(..., min_length=1)

    @property
    def resolved_bucket(self) -> str:
        return self.bucket or "skill-outputs"

    @property
    def resolved_table(self) -> str:
        return self.table or "skill_output_storage"


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

class EngineRules(BaseModel):
    """
    Root rules object for the engine.

    Loaded from YAML by context_engine.config.loader.load_engine_rules().
    """
    findings: FindingLimits = Field(default_factory=FindingLimits)
    token_budgets: TokenBudgets = Field(default_factory=TokenBudgets)
    compact_when: CompactionTriggers = Field(default_factory=CompactionTriggers)
    max_summary_words: int = Field(100, ge=1)
    skill_context_key_facts: int = Field(5, ge=0)
    skill_context_action_items: int = Field(5, ge=0)
    skill_context_risks: int = Field(3, ge=0)

    @model_validator(mode="after")
    def check_key_fact_trigger(self) -> "EngineRules":
        if self.compact_when.key_facts_exceed < self.findings.max_key_facts:
            raise ValueError(
                "compact_when.key_facts_exceed "
                f"({self.compact_when.key_facts_exceed}) must be >= "
                f"findings.max_key_facts ({self.findings.max_key_facts})"
            )
        return self


DEFAULT_RULES = EngineRules()
