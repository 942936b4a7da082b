"""
Sequence Context Engine.

State container and compaction engine for multi-step sales agent
sequences: one bounded SequenceState per execution, pointers instead of
payloads, and a checkpoint after every merged skill result.
"""

from context_engine.compactor import (
    CompactionResult,
    ContextCompactor,
    RawSkillOutput,
    create_context_compactor,
    quick_compact,
    should_compact_data,
)
from context_engine.config.schema import DEFAULT_RULES, EngineRules, StorageConfig
from context_engine.contracts import (
    Reference,
    SequenceState,
    SequenceTrigger,
    SequenceType,
    SkillResult,
    create_failed_skill_result,
    create_skill_result,
    estimate_tokens,
    validate_skill_result,
)
from context_engine.persistence import CheckpointStore, SupabaseCheckpointStore
from context_engine.state_manager import SequenceStateManager, create_sequence_state_manager

__version__ = "0.1.0"

__all__ = [
    "CheckpointStore",
    "CompactionResult",
    "ContextCompactor",
    "DEFAULT_RULES",
    "EngineRules",
    "RawSkillOutput",
    "Reference",
    "SequenceState",
    "SequenceStateManager",
    "SequenceTrigger",
    "SequenceType",
    "SkillResult",
    "StorageConfig",
    "SupabaseCheckpointStore",
    "create_context_compactor",
    "create_failed_skill_result",
    "create_sequence_state_manager",
    "create_skill_result",
    "estimate_tokens",
    "quick_compact",
    "should_compact_data",
    "validate_skill_result",
]
