"""Per-user bearer tokens for the game platform, kept in the ``external_tokens`` table."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import db
from errors import ValidationError
from game_api import GameApiClient

logger = logging.getLogger(__name__)


def _ttl_minutes() -> int:
    try:
        return max(1, int(os.getenv("TOKEN_TTL_MINUTES", "30")))
    except ValueError:
        return 30


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(db.ISO_FORMAT)


class TokenStore:
    """Keyed token map with expiry. Expired entries are removed when read."""

    def __init__(
        self,
        db_module=db,
        *,
        ttl_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = db_module
        self._ttl = timedelta(minutes=ttl_minutes if ttl_minutes is not None else _ttl_minutes())
        self._clock = clock

    def set(self, user_id: str, token: str, expires_at: Optional[datetime] = None) -> str:
        user = self._db.sanitize_user_id(user_id)
        issued = self._clock()
        expiry = expires_at or issued + self._ttl
        self._db.set_token_row(user, token, _format(issued), _format(expiry))
        return _format(expiry)

    def get(self, user_id: str) -> Optional[str]:
        user = self._db.sanitize_user_id(user_id)
        row = self._db.get_token_row(user)
        if not row:
            return None
        expires = datetime.strptime(row["expires_at"], db.ISO_FORMAT).replace(tzinfo=timezone.utc)
        if expires <= self._clock():
            logger.info("Token for %s expired at %s; removing", user, row["expires_at"])
            self._db.delete_token_row(user)
            return None
        return row["token"]

    def invalidate(self, user_id: str) -> None:
        self._db.delete_token_row(self._db.sanitize_user_id(user_id))


async def set_external_token(
    user_id: str,
    token: str,
    *,
    store: TokenStore,
    client: GameApiClient,
) -> bool:
    """Validate ``token`` upstream and keep it only when it is accepted."""
    candidate = (token or "").strip()
    if not candidate:
        raise ValidationError("bearerToken is required")
    user = await asyncio.to_thread(db.ensure_user, user_id)
    if not await client.check_token(candidate):
        logger.info("Rejected external token for %s", user)
        return False
    await asyncio.to_thread(store.set, user, candidate)
    return True
