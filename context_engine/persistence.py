"""
Checkpoint and reference-archive persistence for sequence executions.

A checkpoint is one row per sequence instance in `sequence_executions`,
upserted on `id` after every merge so a re-run of the same upsert is
idempotent. References trimmed out of the working state are appended to
`sequence_references_archive`.

Usage:
    store = SupabaseCheckpointStore(get_supabase_client())
    store.upsert_checkpoint(record)
    row = store.load_checkpoint("post_meeting_intelligence-1718000000000-a1b2c3d")
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from context_engine.exceptions import ArchiveError, CheckpointError

logger = logging.getLogger(__name__)

EXECUTIONS_TABLE = "sequence_executions"
ARCHIVE_TABLE = "sequence_references_archive"


class CheckpointStore(ABC):
    """Where checkpoints and archived references are written."""

    @abstractmethod
    def upsert_checkpoint(self, record: dict[str, Any]) -> None:
        """Insert or replace the checkpoint row keyed by record['id']."""
        ...

    @abstractmethod
    def load_checkpoint(self, instance_id: str) -> Optional[dict[str, Any]]:
        """Return the checkpoint row, or None when no row exists."""
        ...

    @abstractmethod
    def archive_references(self, records: list[dict[str, Any]]) -> None:
        """
        Append archived reference rows.

        Should raise ArchiveError on failure. The state manager treats any
        exception raised here as a failed, non-fatal archive.
        """
        ...


class SupabaseCheckpointStore(CheckpointStore):
    """Checkpoint store backed by two Supabase tables."""

    def __init__(
        self,
        client: Any,
        executions_table: str = EXECUTIONS_TABLE,
        archive_table: str = ARCHIVE_TABLE,
    ):
        self.client = client
        self.executions_table = executions_table
        self.archive_table = archive_table

    def upsert_checkpoint(self, record: dict[str, Any]) -> None:
        instance_id = record.get("id")
        try:
            (
                self.client.table(self.executions_table)
                .upsert(record, on_conflict="id")
                .execute()
            )
        except Exception as e:
            raise CheckpointError(
                f"Failed to persist checkpoint: {e}",
                instance_id=instance_id,
            ) from e

    def load_checkpoint(self, instance_id: str) -> Optional[dict[str, Any]]:
        try:
            result = (
                self.client.table(self.executions_table)
                .select("*")
                .eq("id", instance_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise CheckpointError(
                f"Failed to load checkpoint: {e}",
                instance_id=instance_id,
            ) from e
        return result.data[0] if result.data else None

    def archive_references(self, records: list[dict[str, Any]]) -> None:
        if not records:
            return
        instance_id = records[0].get("sequence_instance_id")
        try:
            self.client.table(self.archive_table).insert(records).execute()
        except Exception as e:
            raise ArchiveError(
                f"Failed to archive references: {e}",
                instance_id=instance_id,
                record_count=len(records),
            ) from e
        logger.debug(
            f"Archived {len(records)} reference(s)",
            extra={"instance_id": instance_id, "table": self.archive_table},
        )
