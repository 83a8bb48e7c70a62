"""User context provider.

Loads the personalization context analyzers prompt with: profile fields from
``user_context`` and the user's active clients. Results are cached briefly
because a batch asks for the same user's context once per run and runs come
in bursts.
"""

import logging
import time
from typing import Any

from mailsift.core.exceptions import PersistenceError
from mailsift.models.email import ClientRef, UserContext

logger = logging.getLogger(__name__)

_CACHE_TTL_SECONDS = 300


class UserContextProvider:
    """Read-only ``UserContext`` lookups with a short TTL cache."""

    def __init__(self, store: Any, ttl_seconds: float = _CACHE_TTL_SECONDS) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._cache: dict[str, tuple[float, UserContext]] = {}

    async def get(self, user_id: str) -> UserContext:
        """Context for ``user_id``; a minimal context when nothing is stored.

        Store failures degrade to the minimal context so analysis can proceed
        without personalization.
        """
        cached = self._cache.get(user_id)
        if cached and time.monotonic() - cached[0] < self._ttl:
            return cached[1]

        try:
            row = await self._store.get_user_context_row(user_id)
            clients = await self._store.get_active_clients(user_id)
        except PersistenceError:
            logger.warning("Failed to load user context, using minimal context", extra={"user_id": user_id})
            return UserContext(user_id=user_id)

        context = self._from_row(user_id, row or {}, clients)
        self._cache[user_id] = (time.monotonic(), context)
        return context

    def invalidate(self, user_id: str) -> None:
        """Drop a cached context (after the user edits their profile)."""
        self._cache.pop(user_id, None)

    @staticmethod
    def _from_row(user_id: str, row: dict[str, Any], clients: list[dict[str, Any]]) -> UserContext:
        return UserContext(
            user_id=user_id,
            role=row.get("role"),
            company=row.get("company"),
            location_city=row.get("location_city"),
            location_metro=row.get("location_metro"),
            priorities=row.get("priorities") or [],
            projects=row.get("projects") or [],
            vip_emails=[e.lower() for e in row.get("vip_emails") or []],
            vip_domains=row.get("vip_domains") or [],
            interests=row.get("interests") or [],
            family_context=row.get("family_context"),
            onboarding_completed=bool(row.get("onboarding_completed")),
            clients=[ClientRef.model_validate(c) for c in clients if c.get("id") and c.get("name")],
        )
