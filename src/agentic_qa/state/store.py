"""Session persistence with atomic per-session commits."""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol, TypeVar

import aiosqlite
import structlog
from pydantic import ValidationError

from agentic_qa.config import StateConfig
from agentic_qa.errors import SessionUnavailable
from agentic_qa.locks import KeyedLocks
from agentic_qa.types import Session, utc_now

logger = structlog.get_logger(__name__)

Mutation = Callable[[Session], Session]
_T = TypeVar("_T")


@dataclass(slots=True)
class CommitResult:
    """Outcome of a commit: the stored session, or a version conflict."""

    session: Session | None
    conflict: bool = False

    @property
    def ok(self) -> bool:
        return not self.conflict and self.session is not None


class StateStore(Protocol):
    """Session store contract. `commit` is the only mutation entry point."""

    async def get(self, session_id: str, *, user_id: str | None = None) -> Session:
        """Return the stored session, or a fresh default one."""

    async def commit(
        self,
        session_id: str,
        mutation: Mutation,
        *,
        expected_version: int | None = None,
    ) -> CommitResult:
        """Apply `mutation` to the latest session atomically."""

    async def sweep_expired(self) -> int:
        """Delete expired sessions and return how many were removed."""


def _stamp(previous: Session, updated: Session) -> Session:
    return updated.model_copy(
        update={
            "session_id": previous.session_id,
            "created_at": previous.created_at,
            "version": previous.version + 1,
            "updated_at": utc_now(),
        }
    )


class InMemoryStateStore:
    """Process-local store used for tests and single-instance deployments.

    Sessions are kept serialized so every `get` hands out an independent
    snapshot; nothing a caller does to its copy reaches the store.
    """

    def __init__(self, config: StateConfig | None = None) -> None:
        self.config = config or StateConfig()
        self._payloads: dict[str, str] = {}
        self._locks: KeyedLocks[str] = KeyedLocks()

    def __len__(self) -> int:
        return len(self._payloads)

    def _expired(self, session: Session, now: datetime) -> bool:
        return now - session.updated_at > timedelta(seconds=self.config.retention_seconds)

    def _load(self, session_id: str, user_id: str | None) -> Session:
        payload = self._payloads.get(session_id)
        if payload is None:
            return Session.new(session_id, user_id)
        session = Session.model_validate_json(payload)
        if self._expired(session, utc_now()):
            del self._payloads[session_id]
            logger.info("session_expired", session_id=session_id)
            return Session.new(session_id, user_id)
        return session

    async def get(self, session_id: str, *, user_id: str | None = None) -> Session:
        return self._load(session_id, user_id)

    async def commit(
        self,
        session_id: str,
        mutation: Mutation,
        *,
        expected_version: int | None = None,
    ) -> CommitResult:
        async with self._locks.hold(session_id):
            current = self._load(session_id, None)
            if expected_version is not None and current.version != expected_version:
                logger.warning(
                    "commit_conflict",
                    session_id=session_id,
                    expected_version=expected_version,
                    stored_version=current.version,
                )
                return CommitResult(session=None, conflict=True)
            updated = _stamp(current, mutation(current))
            # Serialize before publishing so a failing mutation leaves the old payload.
            self._payloads[session_id] = updated.model_dump_json()
            return CommitResult(session=updated)

    async def sweep_expired(self) -> int:
        """Drop every expired session and return how many were removed."""
        now = utc_now()
        expired = [
            session_id
            for session_id, payload in list(self._payloads.items())
            if self._expired(Session.model_validate_json(payload), now)
        ]
        for session_id in expired:
            self._payloads.pop(session_id, None)
        return len(expired)


class SqliteStateStore:
    """Durable store backed by a single SQLite table through `aiosqlite`.

    Each commit runs inside a `BEGIN IMMEDIATE` transaction, so concurrent
    writers (including other store instances and processes) are serialized
    by SQLite and a commit is either fully applied or absent. Waiting for
    the write lock is bounded by SQLite's busy timeout; once a commit has
    started it runs to completion even if its caller is cancelled, so the
    outcome a caller sees always matches what was stored.
    """

    def __init__(self, path: str | Path, config: StateConfig | None = None) -> None:
        self.path = Path(path)
        self.config = config or StateConfig()
        self._init_lock = asyncio.Lock()
        self._initialized = False

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.path, timeout=self.config.operation_timeout_seconds, isolation_level=None)

    async def _ensure_schema(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with self._connect() as conn:
                await conn.execute("PRAGMA journal_mode=WAL;")
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS sessions (
                        session_id TEXT PRIMARY KEY,
                        version INTEGER NOT NULL,
                        updated_at TEXT NOT NULL,
                        payload TEXT NOT NULL
                    )
                    """
                )
            self._initialized = True

    def _cutoff(self) -> str:
        return (utc_now() - timedelta(seconds=self.config.retention_seconds)).isoformat()

    async def _read(self, conn: aiosqlite.Connection, session_id: str, user_id: str | None) -> Session:
        async with conn.execute(
            "SELECT payload, updated_at FROM sessions WHERE session_id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None or row[1] < self._cutoff():
            return Session.new(session_id, user_id)
        return Session.model_validate_json(row[0])

    async def _get_once(self, session_id: str, user_id: str | None) -> Session:
        await self._ensure_schema()
        async with self._connect() as conn:
            return await self._read(conn, session_id, user_id)

    async def _commit_once(
        self,
        session_id: str,
        mutation: Mutation,
        expected_version: int | None,
    ) -> CommitResult:
        await self._ensure_schema()
        async with self._connect() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                current = await self._read(conn, session_id, None)
                if expected_version is not None and current.version != expected_version:
                    await conn.execute("ROLLBACK")
                    logger.warning("commit_conflict", session_id=session_id, expected_version=expected_version)
                    return CommitResult(session=None, conflict=True)
                updated = _stamp(current, mutation(current))
                await conn.execute(
                    """
                    INSERT INTO sessions(session_id, version, updated_at, payload) VALUES(?, ?, ?, ?)
                    ON CONFLICT(session_id) DO UPDATE SET
                        version=excluded.version,
                        updated_at=excluded.updated_at,
                        payload=excluded.payload
                    """,
                    (session_id, updated.version, updated.updated_at.isoformat(), updated.model_dump_json()),
                )
                await conn.execute("COMMIT")
                return CommitResult(session=updated)
            except BaseException:
                await conn.execute("ROLLBACK")
                raise

    async def _sweep_once(self) -> int:
        await self._ensure_schema()
        async with self._connect() as conn:
            cursor = await conn.execute("DELETE FROM sessions WHERE updated_at < ?", (self._cutoff(),))
            return cursor.rowcount

    async def _guard(self, operation: str, work: Awaitable[_T]) -> _T:
        try:
            return await work
        except (sqlite3.Error, OSError, ValidationError) as exc:
            logger.error("state_store_error", operation=operation, error=str(exc))
            raise SessionUnavailable(f"state store {operation} failed: {exc}") from exc

    async def get(self, session_id: str, *, user_id: str | None = None) -> Session:
        # Reads have no side effects, so abandoning a slow one is safe.
        return await bounded(
            self._guard("get", self._get_once(session_id, user_id)),
            self.config.operation_timeout_seconds,
            "get",
        )

    async def commit(
        self,
        session_id: str,
        mutation: Mutation,
        *,
        expected_version: int | None = None,
    ) -> CommitResult:
        task = asyncio.ensure_future(self._guard("commit", self._commit_once(session_id, mutation, expected_version)))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(_report_detached_commit)
            raise

    async def sweep_expired(self) -> int:
        return await self._guard("sweep", self._sweep_once())


def _report_detached_commit(task: asyncio.Future[CommitResult]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("detached_commit_failed", error=str(exc))
    elif task.result().session is not None:
        logger.info("detached_commit_landed", version=task.result().session.version)


async def bounded(awaitable: Awaitable[_T], timeout: float, operation: str) -> _T:
    """Bound a side-effect-free store call; a store that does not answer in time is unavailable."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise SessionUnavailable(f"state store {operation} timed out") from exc
