"""Ephemeral key-value store with per-entry expiry.

Backs heartbeat liveness, delayed notifications and notification dedup
markers. Expired entries are invisible to readers and purged lazily.
"""
import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import EphemeralEntry
from ..utils.db_utils import retry_transient
from ..utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class EphemeralStore:
    """``get``/``put`` with TTL on top of the ``ephemeral_kv`` table."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[str]:
        async def _get():
            async with self._session_factory() as session:
                entry = await session.get(EphemeralEntry, key)
                if entry is None or entry.expires_at <= utcnow():
                    return None
                return entry.value

        return await retry_transient(_get, f"kv get {key}")

    async def put(self, key: str, value: str, ttl_seconds: int):
        expires_at = utcnow() + timedelta(seconds=ttl_seconds)

        async def _write():
            async with self._session_factory() as session:
                # merge() gives insert-or-replace on the primary key
                await session.merge(EphemeralEntry(key=key, value=value, expires_at=expires_at))
                await session.commit()

        await retry_transient(_write, f"kv put {key}")

    async def delete(self, key: str):
        async def _delete():
            async with self._session_factory() as session:
                await session.execute(delete(EphemeralEntry).where(EphemeralEntry.key == key))
                await session.commit()

        await retry_transient(_delete, f"kv delete {key}")

    async def scan(self, prefix: str) -> List[Tuple[str, str]]:
        """Live entries whose key starts with ``prefix``, oldest key first."""
        async def _scan():
            async with self._session_factory() as session:
                result = await session.execute(
                    select(EphemeralEntry.key, EphemeralEntry.value)
                    .where(
                        EphemeralEntry.key.startswith(prefix, autoescape=True),
                        EphemeralEntry.expires_at > utcnow(),
                    )
                    .order_by(EphemeralEntry.key)
                )
                return [(row.key, row.value) for row in result]

        return await retry_transient(_scan, f"kv scan {prefix}")

    async def purge_expired(self) -> int:
        async def _purge():
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(EphemeralEntry).where(EphemeralEntry.expires_at <= utcnow())
                )
                await session.commit()
                return result.rowcount or 0

        removed = await retry_transient(_purge, "kv purge")
        if removed:
            logger.debug(f"Purged {removed} expired ephemeral entries")
        return removed
