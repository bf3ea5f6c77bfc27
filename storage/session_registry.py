"""Redis hash store for live session mappings.

One hash per session (`session:{sessionId}`) with a backstop TTL. The normal
lifecycle deletes the key on termination; the TTL only prevents leaks.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError
from redis.asyncio import Redis

from core.utils.time_utils import now_s
from packages.schemas.session import SessionMapping

log = logging.getLogger("tutorlink.storage.session_registry")

DEFAULT_TTL_SEC = 86_400


class SessionRegistry:
    """Key-value registry of session id -> participants."""

    def __init__(self, client: Redis, ttl_sec: int = DEFAULT_TTL_SEC, prefix: str = "session") -> None:
        """
        Args:
            client: `redis.asyncio.Redis` created with decode_responses=True.
            ttl_sec: Expiration applied on every put.
            prefix: Key prefix.
        """
        self._r = client
        self._ttl = ttl_sec
        self._prefix = prefix

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}:{session_id}"

    async def put(self, mapping: SessionMapping) -> None:
        """Store (or overwrite) a mapping and reset its TTL."""
        fields = {
            "sessionId": mapping.session_id,
            "studentAddress": mapping.student_address,
            "tutorAddress": mapping.tutor_address,
            "languageId": str(mapping.language_id),
            "startTime": str(mapping.start_time),
        }
        if mapping.student_endpoint:
            fields["studentEndpoint"] = mapping.student_endpoint
        if mapping.tutor_endpoint:
            fields["tutorEndpoint"] = mapping.tutor_endpoint

        key = self._key(mapping.session_id)
        async with self._r.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(key, mapping=fields)
            pipe.expire(key, self._ttl)
            await pipe.execute()
        log.info("session mapping stored: %s -> tutor=%s", mapping.session_id, mapping.tutor_address)

    async def create(
        self,
        session_id: str,
        student_address: str,
        tutor_address: str,
        language_id: int,
        student_endpoint: Optional[str] = None,
        tutor_endpoint: Optional[str] = None,
    ) -> SessionMapping:
        """Build a mapping that starts now and store it."""
        mapping = SessionMapping(
            session_id=session_id,
            student_address=student_address,
            tutor_address=tutor_address,
            language_id=language_id,
            start_time=int(now_s()),
            student_endpoint=student_endpoint,
            tutor_endpoint=tutor_endpoint,
        )
        await self.put(mapping)
        return mapping

    async def get(self, session_id: str) -> Optional[SessionMapping]:
        """Return the mapping, or None when absent (or unreadable)."""
        data = await self._r.hgetall(self._key(session_id))
        if not data:
            return None
        try:
            return SessionMapping.model_validate(data)
        except ValidationError as exc:
            log.warning("unreadable session mapping %s: %s", session_id, exc)
            return None

    async def delete(self, session_id: str) -> bool:
        """Remove a mapping. Safe to call repeatedly."""
        removed = await self._r.delete(self._key(session_id))
        if removed:
            log.info("session mapping removed: %s", session_id)
        return bool(removed)

    async def close(self) -> None:
        await self._r.aclose()
