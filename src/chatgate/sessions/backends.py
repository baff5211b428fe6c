"""
Pluggable session storage backends.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from chatgate.sessions.models import Session

logger = logging.getLogger(__name__)


class SessionBackend(ABC):
    """
    Abstract storage for session records.

    Backends must keep a user_id → session ids index so listing a user's
    sessions never needs a full scan. Every method is atomic per record.
    """

    @abstractmethod
    async def get(self, session_id: str) -> Session | None:
        pass

    @abstractmethod
    async def put(self, session: Session) -> None:
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        pass

    @abstractmethod
    async def ids_for_user(self, user_id: str) -> list[str]:
        pass

    @abstractmethod
    async def all(self) -> list[Session]:
        pass

    async def delete_expired(self, cutoff: datetime) -> int:
        """Delete every session with expires_at < cutoff."""
        removed = 0
        for session in await self.all():
            if session.expires_at is not None and session.expires_at < cutoff:
                if await self.delete(session.id):
                    removed += 1
        return removed

    async def close(self) -> None:
        """Release resources. Default: nothing to do."""


class MemorySessionBackend(SessionBackend):
    """In-process dict storage. Lost on restart."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._by_user: dict[str, set[str]] = {}

    async def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def put(self, session: Session) -> None:
        self._store(session)

    def _store(self, session: Session) -> None:
        previous = self._sessions.get(session.id)
        if previous is not None and previous.user_id != session.user_id:
            self._unindex(previous)
        self._sessions[session.id] = session
        self._by_user.setdefault(session.user_id, set()).add(session.id)

    async def delete(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._unindex(session)
        return True

    def _unindex(self, session: Session) -> None:
        ids = self._by_user.get(session.user_id)
        if ids is not None:
            ids.discard(session.id)
            if not ids:
                del self._by_user[session.user_id]

    async def ids_for_user(self, user_id: str) -> list[str]:
        return sorted(self._by_user.get(user_id, ()))

    async def all(self) -> list[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)


class JsonFileSessionBackend(MemorySessionBackend):
    """
    Persist sessions to a JSON file on disk.

    Layout: {"sessions": {id: record}, "by_user": {user_id: [ids]}}.
    The whole file is rewritten after every mutation, so sessions
    survive restarts.
    """

    def __init__(self, path: Path):
        super().__init__()
        self._path = Path(path)
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        """Load sessions from disk."""
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not load sessions from %s: %s", self._path, e)
            return

        for record in (data.get("sessions") or {}).values():
            try:
                self._store(Session.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed session record: %s", e)

    def save(self) -> None:
        """Write sessions to disk."""
        data = {
            "sessions": {sid: s.to_dict() for sid, s in self._sessions.items()},
            "by_user": {uid: sorted(ids) for uid, ids in self._by_user.items()},
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as e:
            logger.warning("Could not save sessions to %s: %s", self._path, e)

    async def put(self, session: Session) -> None:
        await super().put(session)
        self.save()

    async def delete(self, session_id: str) -> bool:
        removed = await super().delete(session_id)
        if removed:
            self.save()
        return removed

    async def close(self) -> None:
        self.save()
