"""Shared helpers for feather_sync."""
