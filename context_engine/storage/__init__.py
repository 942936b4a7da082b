"""Storage backends for offloaded skill payloads."""

from __future__ import annotations

from typing import Any

from context_engine.config.schema import BackendKind, StorageConfig
from context_engine.storage.base import (
    ParsedLocation,
    StorageBackend,
    build_location,
    parse_location,
)
from context_engine.storage.supabase_backends import (
    S3ObjectBackend,
    SupabaseObjectBackend,
    SupabaseTableBackend,
)


def build_backends(client: Any, config: StorageConfig) -> dict[BackendKind, StorageBackend]:
    """One backend per kind, all sharing the same Supabase client."""
    table_backend = SupabaseTableBackend(client)
    return {
        BackendKind.SUPABASE_STORAGE: SupabaseObjectBackend(client),
        BackendKind.DATABASE: table_backend,
        BackendKind.S3: S3ObjectBackend(table_backend, config.resolved_table),
    }


__all__ = [
    "ParsedLocation",
    "S3ObjectBackend",
    "StorageBackend",
    "SupabaseObjectBackend",
    "SupabaseTableBackend",
    "build_backends",
    "build_location",
    "parse_location",
]
