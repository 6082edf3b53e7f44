"""Database connection and client."""
from functools import lru_cache
from supabase import create_client, Client
from kessan.config import get_settings


@lru_cache()
def get_supabase_client() -> Client:
    """Get Supabase client instance."""
    settings = get_settings()
    return create_client(
        supabase_url=settings.supabase_url,
        supabase_key=settings.supabase_service_role_key
    )
