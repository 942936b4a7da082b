"""
Supabase client factory for the Sequence Context Engine.

The engine only needs a plain supabase Client: checkpoint rows, archived
references and offloaded payloads all go through it. Credentials come
from SUPABASE_URL and SUPABASE_SERVICE_KEY (service role, bypasses RLS;
organization scoping is applied in application code).
"""

from __future__ import annotations

import os
from typing import Optional

from supabase import Client, create_client


def get_supabase_client(
    url: Optional[str] = None,
    key: Optional[str] = None,
) -> Client:
    """
    Build a Supabase client from arguments or the environment.

    Raises:
        EnvironmentError: If the URL or service key is missing.
    """
    url = url or os.environ.get("SUPABASE_URL")
    key = key or os.environ.get("SUPABASE_SERVICE_KEY")
    if not url or not key:
        raise EnvironmentError(
            "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
        )
    return create_client(url, key)
