from __future__ import annotations

import os

from supabase import Client, create_client


def get_client() -> Client:
    """Supabase client for the persistence backend.

    The engine writes orders on behalf of every user, so a service-role key is
    preferred over the anon key when both are configured.
    """
    url = os.getenv("SUPABASE_URL", "").strip()
    key = (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_KEY") or "").strip()
    if not url or not key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_KEY are required for FAREBRIDGE_STORAGE_BACKEND=supabase")
    return create_client(url, key)
