"""
Supabase-backed storage for offloaded skill payloads.

Three interchangeable backends behind StorageBackend:
- SupabaseObjectBackend: Supabase Storage bucket, one JSON object per payload
- SupabaseTableBackend: a table row per payload (data in a JSON column)
- S3ObjectBackend: placeholder that writes through the table backend

All take an already-built supabase Client (see
context_engine.integrations.supabase_client.get_supabase_client).
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from context_engine.storage.base import StorageBackend, build_location

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"


class SupabaseObjectBackend(StorageBackend):
    """Payloads as JSON objects in a Supabase Storage bucket."""

    scheme = "supabase"

    def __init__(self, client: Any):
        self.client = client

    async def write(
        self,
        container: str,
        path: str,
        payload: dict[str, Any],
        *,
        body: str,
        organization_id: str,
        reference_type: str,
        size_bytes: int,
    ) -> str:
        self.client.storage.from_(container).upload(
            path,
            body.encode("utf-8"),
            {"content-type": JSON_CONTENT_TYPE, "upsert": "true"},
        )
        return build_location(self.scheme, container, path)

    async def read(self, container: str, path: str) -> Optional[dict[str, Any]]:
        try:
            raw = self.client.storage.from_(container).download(path)
        except Exception as e:
            logger.error(
                f"Storage download failed for {container}/{path}: {e}",
                extra={"backend": self.scheme},
            )
            return None
        if not raw:
            return None
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            logger.error(f"Stored object {container}/{path} is not JSON: {e}")
            return None


class SupabaseTableBackend(StorageBackend):
    """Payloads as rows: organization_id, path, content_type, data, size_bytes."""

    scheme = "db"

    def __init__(self, client: Any):
        self.client = client

    async def write(
        self,
        container: str,
        path: str,
        payload: dict[str, Any],
        *,
        body: str,
        organization_id: str,
        reference_type: str,
        size_bytes: int,
    ) -> str:
        self.client.table(container).insert({
            "organization_id": organization_id,
            "path": path,
            "content_type": reference_type,
            "data": payload,
            "size_bytes": size_bytes,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }).execute()
        return build_location(self.scheme, container, path)

    async def read(self, container: str, path: str) -> Optional[dict[str, Any]]:
        try:
            result = (
                self.client.table(container)
                .select("data")
                .eq("path", path)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(
                f"Row lookup failed for {container}/{path}: {e}",
                extra={"backend": self.scheme},
            )
            return None
        if not result.data:
            return None
        return result.data[0].get("data")


class S3ObjectBackend(StorageBackend):
    """
    Placeholder for a second object store.

    Writes fall through to the table backend (so the returned location is
    a db:// URI); reads of s3:// locations report "not found".
    """

    scheme = "s3"

    def __init__(self, fallback: SupabaseTableBackend, fallback_table: str):
        self.fallback = fallback
        self.fallback_table = fallback_table

    async def write(
        self,
        container: str,
        path: str,
        payload: dict[str, Any],
        *,
        body: str,
        organization_id: str,
        reference_type: str,
        size_bytes: int,
    ) -> str:
        logger.warning(
            "S3 storage not implemented, writing to database fallback",
            extra={"backend": self.scheme, "table": self.fallback_table},
        )
        return await self.fallback.write(
            self.fallback_table,
            path,
            payload,
            body=body,
            organization_id=organization_id,
            reference_type=reference_type,
            size_bytes=size_bytes,
        )

    async def read(self, container: str, path: str) -> Optional[dict[str, Any]]:
        logger.warning(
            f"S3 retrieval not implemented: {container}/{path}",
            extra={"backend": self.scheme},
        )
        return None
