"""
Reusable authenticated session for the blog publisher.

The session is the Playwright ``storage_state`` (cookies + local storage) of a
logged-in browser context. It is stored as a single row so every publish can
reuse it instead of logging in again. When the blog rejects it, the stored
state is dropped, a fresh login happens once and the action is retried once.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from app.core.errors import SessionExpiredError
from app.core.logging import get_logger
from services.db_service import execute, fetchrow

logger = get_logger()

T = TypeVar("T")
StorageState = Dict[str, Any]
Authenticator = Callable[[], Awaitable[StorageState]]


@dataclass(frozen=True)
class SessionHandle:
    """What a publish action gets: the state to open its own browser context with."""

    storage_state: StorageState
    fresh: bool = False


class SessionStore(ABC):
    @abstractmethod
    async def load(self) -> Optional[StorageState]:
        ...

    @abstractmethod
    async def save(self, state: StorageState) -> None:
        ...

    @abstractmethod
    async def delete(self) -> None:
        """Remove the stored session. Deleting a missing session is a no-op."""


class PostgresSessionStore(SessionStore):
    SESSION_ROW_ID = 1

    async def load(self) -> Optional[StorageState]:
        row = await fetchrow(
            "SELECT storage_state FROM publish_session WHERE id = $1",
            self.SESSION_ROW_ID,
        )
        if row is None or row["storage_state"] is None:
            return None
        value = row["storage_state"]
        # asyncpg returns jsonb as text unless a codec is registered
        return json.loads(value) if isinstance(value, str) else dict(value)

    async def save(self, state: StorageState) -> None:
        await execute(
            """
            INSERT INTO publish_session (id, storage_state, created_at, updated_at)
            VALUES ($1, CAST($2 AS JSONB), NOW(), NOW())
            ON CONFLICT (id) DO UPDATE
            SET storage_state = EXCLUDED.storage_state,
                created_at = NOW(),
                updated_at = NOW()
            """,
            self.SESSION_ROW_ID,
            json.dumps(state, ensure_ascii=False),
        )

    async def delete(self) -> None:
        await execute("DELETE FROM publish_session WHERE id = $1", self.SESSION_ROW_ID)


class FileSessionStore(SessionStore):
    """storage_state JSON on disk, for running the publisher without a database."""

    def __init__(self, path: str | Path = "sessions/blog-session.json") -> None:
        self.path = Path(path)

    def _read(self) -> Optional[StorageState]:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("publish_session_file_corrupt", path=str(self.path))
            return None

    def _write(self, state: StorageState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(state, ensure_ascii=False), encoding="utf-8")

    def _unlink(self) -> None:
        self.path.unlink(missing_ok=True)

    # bestandstoegang in de executor, niet op de event loop
    async def load(self) -> Optional[StorageState]:
        return await asyncio.get_running_loop().run_in_executor(None, self._read)

    async def save(self, state: StorageState) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self._write, state)

    async def delete(self) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self._unlink)


def build_session_store(session_file: Optional[str]) -> SessionStore:
    """File store when a session file is configured, the publish_session row otherwise."""
    if session_file:
        return FileSessionStore(session_file)
    return PostgresSessionStore()


class PublishSessionManager:
    def __init__(self, store: SessionStore, authenticate: Authenticator) -> None:
        self.store = store
        self.authenticate = authenticate

    async def _login(self) -> StorageState:
        logger.info("publish_session_authenticating")
        state = await self.authenticate()
        await self.store.save(state)
        logger.info("publish_session_saved", cookie_count=len(state.get("cookies") or []))
        return state

    async def with_session(self, action: Callable[[SessionHandle], Awaitable[T]]) -> T:
        """
        Run ``action`` with a valid session.

        1. No stored session: log in and store it.
        2. Run the action.
        3. SessionExpiredError: delete the stored session, log in again and
           run the action one more time.
        4. Whatever the second attempt raises goes to the caller.
        """
        state = await self.store.load()
        fresh = False
        if state is None:
            state = await self._login()
            fresh = True

        try:
            return await action(SessionHandle(storage_state=state, fresh=fresh))
        except SessionExpiredError as exc:
            logger.warning("publish_session_expired", error=str(exc), was_fresh=fresh)
            await self.store.delete()

        state = await self._login()
        return await action(SessionHandle(storage_state=state, fresh=True))
