"""
Storage backend interface and reference location URIs.

A location is "{scheme}://{container}/{path}" where container is a bucket
for object stores and a table for the relational store. Retrieval parses
the scheme back out to pick the backend that wrote it.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

_LOCATION_RE = re.compile(r"^([a-z][a-z0-9_+.-]*)://([^/]+)/(.+)$")


@dataclass(frozen=True)
class ParsedLocation:
    scheme: str
    container: str
    path: str


def build_location(scheme: str, container: str, path: str) -> str:
    return f"{scheme}://{container}/{path}"


def parse_location(location: str) -> Optional[ParsedLocation]:
    """Split a reference location into scheme/container/path, or None if malformed."""
    if not isinstance(location, str):
        return None
    match = _LOCATION_RE.match(location)
    if not match:
        return None
    scheme, container, path = match.groups()
    return ParsedLocation(scheme=scheme, container=container, path=path)


class StorageBackend(ABC):
    """
    One place full skill payloads can live.

    write() raises on failure (the compactor wraps it in StorageWriteError);
    read() returns None when the payload is missing.
    """

    scheme: str = ""

    @abstractmethod
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
        """Persist a payload and return its location URI."""
        ...

    @abstractmethod
    async def read(self, container: str, path: str) -> Optional[dict[str, Any]]:
        """Load a payload previously written to container/path."""
        ...
