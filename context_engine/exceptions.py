"""
Custom exception hierarchy for the Sequence Context Engine.

Structured error handling with clear categories:
- Configuration errors (caught at startup)
- Skill contract violations (a skill returned a malformed result)
- Storage failures (payload offloading / retrieval)
- Checkpoint failures (sequence state durability)
- Archive failures (best-effort, logged by the state manager)

Usage:
    from context_engine.exceptions import StorageWriteError

    try:
        location = await backend.write(...)
    except Exception as e:
        raise StorageWriteError("upload failed", backend="supabase") from e
"""

from __future__ import annotations

from typing import Optional


class ContextEngineError(Exception):
    """
    Base exception for all Sequence Context Engine errors.

    All custom exceptions inherit from this, so you can catch
    `ContextEngineError` to handle any engine-specific error.
    """

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


# ── Configuration Errors ──────────────────────────────────────────


class EngineConfigError(ContextEngineError):
    """
    Raised when the engine rules YAML is missing fields or has invalid values.
    """

    def __init__(
        self,
        message: str,
        *,
        config_path: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.config_path = config_path


# ── Contract Errors ───────────────────────────────────────────────


class SkillContractError(ContextEngineError):
    """
    Raised when a skill result does not match the result contract.

    The state manager never merges such a result; it records the step
    as failed with a generic error instead.
    """

    def __init__(
        self,
        message: str,
        *,
        skill_id: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.skill_id = skill_id


class StateNotInitializedError(ContextEngineError):
    """
    Raised when a state manager is used before initialize() or load().
    """


# ── Storage Errors ────────────────────────────────────────────────


class StorageError(ContextEngineError):
    """
    Raised when an offloaded payload cannot be written to its backend.

    Reads never raise: a missing payload is reported as "not found".
    """

    def __init__(
        self,
        message: str,
        *,
        backend: Optional[str] = None,
        location: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.backend = backend
        self.location = location


class StorageWriteError(StorageError):
    """
    A write to a storage backend failed during compaction.
    """


# ── Persistence Errors ────────────────────────────────────────────


class CheckpointError(ContextEngineError):
    """
    Raised when a sequence checkpoint cannot be written or read.

    The in-memory state has already been mutated when this surfaces,
    so the caller decides whether to retry persist() or accept drift.
    """

    def __init__(
        self,
        message: str,
        *,
        instance_id: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.instance_id = instance_id


class ArchiveError(ContextEngineError):
    """
    Raised by a checkpoint store when archived references cannot be written.

    The state manager treats archival as best-effort and logs this error
    instead of propagating it.
    """

    def __init__(
        self,
        message: str,
        *,
        instance_id: Optional[str] = None,
        record_count: int = 0,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.instance_id = instance_id
        self.record_count = record_count
