"""Test doubles for running the engine without a Supabase project."""

from context_engine.testing.fake_supabase import FakeSupabaseClient

__all__ = ["FakeSupabaseClient"]
