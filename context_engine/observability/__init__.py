"""Logging setup for the Sequence Context Engine."""
