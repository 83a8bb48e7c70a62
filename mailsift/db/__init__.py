"""Database clients for Mailsift."""

from mailsift.db.supabase import EmailStore, SupabaseClient

__all__ = ["EmailStore", "SupabaseClient"]
