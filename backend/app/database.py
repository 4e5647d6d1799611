"""
Centralized database module.

All services share one service-role Supabase client. The service role
bypasses RLS, so this client must never be handed to the browser.
"""

import os
import logging
from typing import Optional
from supabase import create_client, Client

logger = logging.getLogger(__name__)

_supabase_service: Optional[Client] = None


def get_supabase_service() -> Client:
    """Get or create the service-role Supabase client."""
    global _supabase_service
    if _supabase_service is None:
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_SERVICE_KEY")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_service = create_client(url, key)
        logger.info("Supabase service client initialized")
    return _supabase_service


def set_supabase_service(client: Optional[Client]) -> None:
    """Replace the shared client (used by tests and scripts)."""
    global _supabase_service
    _supabase_service = client
