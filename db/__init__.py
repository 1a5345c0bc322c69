"""Slot store: backing store client and query helpers."""

from .supabase_client import NOT_NULL, SupabaseClient, get_db_client

__all__ = ["NOT_NULL", "SupabaseClient", "get_db_client"]
