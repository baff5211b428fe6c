"""
Session store — keyed, expiring session records over a pluggable backend.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from chatgate.config.schema import SessionConfig
from chatgate.protocol.errors import AuthenticationFailedError, SessionNotFoundError
from chatgate.protocol.types import utc_now
from chatgate.sessions.backends import MemorySessionBackend, SessionBackend
from chatgate.sessions.models import Session, SessionContext, SessionState

logger = logging.getLogger(__name__)

_UPDATABLE = {"state", "expires_at", "last_active_at", "context", "preferences"}


class SessionStore:
    """
    Session lifecycle on top of a SessionBackend.

    Expiry is enforced on read (get, list_by_user) as well as by the
    periodic sweep started with start(). Records are only ever replaced
    whole, never edited field by field.
    """

    def __init__(
        self,
        backend: SessionBackend | None = None,
        config: SessionConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.backend = backend or MemorySessionBackend()
        self.config = config or SessionConfig()
        self._clock = clock
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._removal_listeners: list[Callable[[str], None]] = []

    def add_removal_listener(self, listener: Callable[[str], None]) -> None:
        """Call listener(session_id) whenever a session expires or is evicted."""
        self._removal_listeners.append(listener)

    def _notify_removed(self, session_ids: list[str]) -> None:
        for session_id in session_ids:
            for listener in self._removal_listeners:
                try:
                    listener(session_id)
                except Exception:
                    logger.exception("Removal listener failed for session %s", session_id)

    async def create(
        self,
        user_id: str,
        platform: str | Enum,
        metadata: dict[str, Any] | None = None,
        expiration_minutes: int | None = None,
        session_id: str | None = None,
    ) -> Session:
        """
        Create a session, evicting the user's oldest ones when at the cap.

        Args:
            user_id: Owner of the session
            platform: Platform tag the session belongs to
            metadata: Initial preferences
            expiration_minutes: Lifetime; defaults to config
            session_id: Explicit id (e.g. one derived from the chat); generated if omitted
        """
        if session_id is not None:
            await self.backend.delete(session_id)

        live = await self.list_by_user(user_id)
        while len(live) >= self.config.max_sessions_per_user:
            oldest = min(live, key=lambda s: s.created_at)
            await self.backend.delete(oldest.id)
            live.remove(oldest)
            self._notify_removed([oldest.id])
            logger.info("Evicted session %s for user %s (limit %d)", oldest.id, user_id, self.config.max_sessions_per_user)

        now = self._clock()
        minutes = (
            self.config.default_expiration_minutes if expiration_minutes is None else expiration_minutes
        )
        session = Session(
            id=session_id or f"session_{uuid.uuid4().hex}",
            user_id=user_id,
            platform=platform.value if isinstance(platform, Enum) else str(platform),
            created_at=now,
            last_active_at=now,
            expires_at=now + timedelta(minutes=minutes),
            state=SessionState.ACTIVE,
            context=SessionContext(last_message_at=now, preferences=dict(metadata or {})),
        )
        await self.backend.put(session)
        logger.debug("Created session %s for %s on %s", session.id, user_id, session.platform)
        return session

    async def get(self, session_id: str) -> Session | None:
        """Return the session, or None if it is missing or has expired."""
        session = await self.backend.get(session_id)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            await self.backend.delete(session_id)
            logger.debug("Session %s expired on read", session_id)
            self._notify_removed([session_id])
            return None
        return session

    async def _require(self, session_id: str) -> Session:
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFoundError(
                f"Session not found: {session_id}", details={"session_id": session_id}
            )
        return session

    async def update(self, session_id: str, **changes: Any) -> Session:
        """
        Replace a session with selected fields changed.

        Accepts state, expires_at, last_active_at, context (dict merged
        into the context) and preferences (dict merged into preferences).

        Raises:
            SessionNotFoundError: No live session with that id.
        """
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")

        session = await self._require(session_id)
        context = session.context
        if "context" in changes:
            patch = changes.pop("context")
            if isinstance(patch, SessionContext):
                context = patch
            else:
                context = replace(context, **patch)
        if "preferences" in changes:
            context = replace(
                context, preferences={**context.preferences, **changes.pop("preferences")}
            )

        changes.setdefault("last_active_at", self._clock())
        updated = replace(session, context=context, **changes)
        await self.backend.put(updated)
        return updated

    async def touch(self, session_id: str) -> Session:
        """Bump last_active_at only."""
        session = await self._require(session_id)
        updated = replace(session, last_active_at=self._clock())
        await self.backend.put(updated)
        return updated

    async def record_message(self, session_id: str) -> Session:
        """Count a routed message against the session."""
        session = await self._require(session_id)
        now = self._clock()
        updated = replace(
            session,
            last_active_at=now,
            context=replace(
                session.context,
                message_count=session.context.message_count + 1,
                last_message_at=now,
            ),
        )
        await self.backend.put(updated)
        return updated

    async def extend(self, session_id: str, minutes: int) -> Session:
        session = await self._require(session_id)
        now = self._clock()
        updated = replace(session, expires_at=now + timedelta(minutes=minutes), last_active_at=now)
        await self.backend.put(updated)
        return updated

    async def delete(self, session_id: str) -> bool:
        return await self.backend.delete(session_id)

    async def list_by_user(self, user_id: str) -> list[Session]:
        """Live sessions for a user, oldest first. Expired ones are removed."""
        now = self._clock()
        sessions = []
        for session_id in await self.backend.ids_for_user(user_id):
            session = await self.backend.get(session_id)
            if session is None:
                continue
            if session.is_expired(now):
                await self.backend.delete(session_id)
                self._notify_removed([session_id])
                continue
            sessions.append(session)
        return sorted(sessions, key=lambda s: s.created_at)

    async def get_or_create(
        self,
        session_id: str,
        user_id: str,
        platform: str | Enum,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Session, bool]:
        """
        Return (session, created).

        Raises:
            AuthenticationFailedError: The id names a live session owned by
                another user or platform.
        """
        platform_tag = platform.value if isinstance(platform, Enum) else str(platform)
        session = await self.get(session_id)
        if session is not None:
            if session.user_id != user_id or session.platform != platform_tag:
                logger.warning(
                    "User %s on %s tried to use session %s owned by %s on %s",
                    user_id,
                    platform_tag,
                    session_id,
                    session.user_id,
                    session.platform,
                )
                raise AuthenticationFailedError(
                    "Session belongs to another user",
                    code="SESSION_FORBIDDEN",
                    status_code=403,
                    details={"session_id": session_id},
                )
            return session, False
        return await self.create(user_id, platform, metadata, session_id=session_id), True

    async def sweep_expired(self, cutoff: datetime | None = None) -> int:
        """Delete every session that expired before cutoff (default: now)."""
        cutoff = cutoff or self._clock()
        expired = [s.id for s in await self.backend.all() if s.is_expired(cutoff)]
        removed = await self.backend.delete_expired(cutoff)
        self._notify_removed(expired)
        if removed:
            logger.info("Swept %d expired sessions", removed)
        return removed

    async def stats(self) -> dict[str, Any]:
        now = self._clock()
        live = [s for s in await self.backend.all() if not s.is_expired(now)]
        by_platform: dict[str, int] = {}
        for session in live:
            by_platform[session.platform] = by_platform.get(session.platform, 0) + 1
        ages = [(now - s.created_at).total_seconds() / 60 for s in live]
        return {
            "total": len(live),
            "active": sum(1 for s in live if s.state is SessionState.ACTIVE),
            "by_platform": by_platform,
            "average_age_minutes": round(sum(ages) / len(ages), 2) if ages else 0.0,
        }

    async def _run_loop(self) -> None:
        """Periodic sweep loop."""
        interval_s = self.config.cleanup_interval_minutes * 60
        while self._running:
            await asyncio.sleep(interval_s)
            if self._running:
                try:
                    await self.sweep_expired()
                except Exception:
                    logger.exception("Session sweep failed")

    async def start(self) -> None:
        """Start the periodic sweeper."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        """Stop the sweeper and release the backend."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.backend.close()
