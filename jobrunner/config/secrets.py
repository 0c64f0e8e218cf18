from __future__ import annotations

import os

from jobrunner.storage.sqlite_store import SQLiteStore


def lookup_secret(name: str, *, store: SQLiteStore | None = None) -> str:
    """Resolve an API credential: environment first, then the store's `secrets` table.

    Returns "" when the secret is not configured anywhere.
    """
    value = os.getenv(name, "").strip()
    if value:
        return value
    if store is None:
        return ""
    stored = store.get_secret(name) or ""
    # Values pasted from JSON tooling sometimes keep their quotes.
    return stored.strip().strip('"')
