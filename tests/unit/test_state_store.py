import asyncio
import sqlite3
import time

import pytest

from agentic_qa.config import StateConfig
from agentic_qa.errors import SessionUnavailable
from agentic_qa.state.store import InMemoryStateStore, SqliteStateStore, bounded
from agentic_qa.types import Message, Role, Session, ToolOk


def _append(text: str):
    def _mutation(session: Session) -> Session:
        message = Message(role=Role.USER, content=text)
        return session.model_copy(update={"messages": session.messages + (message,)})

    return _mutation


def test_get_returns_default_session_for_unknown_id() -> None:
    store = InMemoryStateStore()

    session = asyncio.run(store.get("s-new", user_id="u-1"))

    assert session.session_id == "s-new"
    assert session.user_id == "u-1"
    assert session.version == 0
    assert session.messages == ()


def test_commit_increments_version_and_persists() -> None:
    store = InMemoryStateStore()

    async def _run() -> tuple[Session, Session]:
        await store.commit("s-1", _append("first"))
        result = await store.commit("s-1", _append("second"))
        return result.session, await store.get("s-1")

    committed, loaded = asyncio.run(_run())

    assert committed.version == 2
    assert loaded.version == 2
    assert [message.content for message in loaded.messages] == ["first", "second"]
    assert loaded.updated_at >= loaded.created_at


def test_concurrent_commits_all_land() -> None:
    store = InMemoryStateStore()

    async def _run() -> Session:
        await asyncio.gather(*(store.commit("s-busy", _append(f"m{index}")) for index in range(20)))
        return await store.get("s-busy")

    session = asyncio.run(_run())

    assert session.version == 20
    assert sorted(message.content for message in session.messages) == sorted(f"m{index}" for index in range(20))


def test_expected_version_mismatch_is_a_conflict() -> None:
    store = InMemoryStateStore()

    async def _run():
        await store.commit("s-1", _append("first"))
        stale = await store.commit("s-1", _append("late"), expected_version=0)
        fresh = await store.commit("s-1", _append("on time"), expected_version=1)
        return stale, fresh, await store.get("s-1")

    stale, fresh, session = asyncio.run(_run())

    assert stale.conflict and not stale.ok
    assert fresh.ok
    assert [message.content for message in session.messages] == ["first", "on time"]


def test_snapshots_are_independent_of_the_store() -> None:
    store = InMemoryStateStore()

    async def _run() -> tuple[Session, Session]:
        await store.commit("s-1", _append("hello"))
        snapshot = await store.get("s-1")
        snapshot.tool_cache["sales_report:abc"] = ToolOk(result=1)
        await store.commit("s-1", _append("again"))
        return snapshot, await store.get("s-1")

    snapshot, latest = asyncio.run(_run())

    assert snapshot.version == 1
    assert len(snapshot.messages) == 1
    assert latest.tool_cache == {}


def test_failing_mutation_leaves_session_untouched() -> None:
    store = InMemoryStateStore()

    def _explode(session: Session) -> Session:
        raise RuntimeError("mutation failed")

    async def _run() -> Session:
        await store.commit("s-1", _append("kept"))
        with pytest.raises(RuntimeError):
            await store.commit("s-1", _explode)
        return await store.get("s-1")

    session = asyncio.run(_run())

    assert session.version == 1
    assert [message.content for message in session.messages] == ["kept"]


def test_expired_sessions_read_as_new() -> None:
    store = InMemoryStateStore(StateConfig(retention_seconds=0.01))

    async def _run() -> tuple[Session, int]:
        await store.commit("s-old", _append("stale"))
        await asyncio.sleep(0.05)
        return await store.get("s-old"), await store.sweep_expired()

    session, swept = asyncio.run(_run())

    assert session.version == 0
    assert session.messages == ()
    assert swept == 0


def test_sqlite_store_round_trips_sessions(tmp_path) -> None:
    store = SqliteStateStore(tmp_path / "sessions.db")

    async def _run() -> tuple[Session, Session]:
        await asyncio.gather(*(store.commit("s-1", _append(f"m{index}")) for index in range(5)))
        result = await store.commit(
            "s-1",
            lambda session: session.model_copy(update={"tool_cache": {"sales_report:abc": ToolOk(result={"total": 5})}}),
        )
        return result.session, await store.get("s-1")

    committed, loaded = asyncio.run(_run())

    assert committed.version == 6
    assert loaded.version == 6
    assert len(loaded.messages) == 5
    assert loaded.tool_cache["sales_report:abc"] == ToolOk(result={"total": 5})


def test_sqlite_store_detects_conflicts_and_expiry(tmp_path) -> None:
    store = SqliteStateStore(tmp_path / "sessions.db", StateConfig(retention_seconds=0.01))

    async def _run():
        await store.commit("s-1", _append("first"))
        conflict = await store.commit("s-1", _append("late"), expected_version=5)
        await asyncio.sleep(0.05)
        return conflict, await store.get("s-1"), await store.sweep_expired()

    conflict, expired, swept = asyncio.run(_run())

    assert conflict.conflict
    assert expired.version == 0
    assert swept == 1


def test_unreachable_sqlite_store_is_unavailable(tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file", encoding="utf-8")
    store = SqliteStateStore(blocker / "sessions.db")

    with pytest.raises(SessionUnavailable):
        asyncio.run(store.get("s-1"))


def test_bounded_maps_timeouts_to_unavailable() -> None:
    async def _hang() -> None:
        await asyncio.sleep(5)

    with pytest.raises(SessionUnavailable):
        asyncio.run(bounded(_hang(), timeout=0.01, operation="get"))


def test_idle_session_locks_are_released() -> None:
    store = InMemoryStateStore()

    async def _run() -> None:
        await asyncio.gather(*(store.commit(f"s-{index % 4}", _append("m")) for index in range(12)))

    asyncio.run(_run())

    assert len(store) == 4
    assert len(store._locks) == 0


def test_sqlite_concurrent_commits_are_serialized(tmp_path) -> None:
    store = SqliteStateStore(tmp_path / "sessions.db")

    async def _run() -> Session:
        results = await asyncio.gather(*(store.commit("s-1", _append(f"m{index}")) for index in range(20)))
        assert all(result.ok for result in results)
        assert sorted(result.session.version for result in results) == list(range(1, 21))
        return await store.get("s-1")

    session = asyncio.run(_run())

    assert session.version == 20
    assert sorted(message.content for message in session.messages) == sorted(f"m{index}" for index in range(20))


def test_two_sqlite_stores_on_one_file_do_not_lose_updates(tmp_path) -> None:
    path = tmp_path / "sessions.db"
    first = SqliteStateStore(path)
    second = SqliteStateStore(path)

    async def _run() -> tuple[Session, Session]:
        await first.commit("s-1", _append("seed"))
        await asyncio.gather(
            *(
                (first if index % 2 else second).commit("s-1", _append(f"m{index}"))
                for index in range(10)
            )
        )
        return await first.get("s-1"), await second.get("s-1")

    seen_by_first, seen_by_second = asyncio.run(_run())

    assert seen_by_first.version == seen_by_second.version == 11
    assert len(seen_by_first.messages) == 11
    assert seen_by_first.messages == seen_by_second.messages


def test_slow_sqlite_commit_reports_what_it_stored(tmp_path) -> None:
    store = SqliteStateStore(tmp_path / "sessions.db", StateConfig(operation_timeout_seconds=0.2))

    def _slow_append(session: Session) -> Session:
        time.sleep(0.4)
        return _append("slow")(session)

    async def _run():
        result = await store.commit("s-1", _slow_append)
        return result, await store.get("s-1")

    result, stored = asyncio.run(_run())

    assert result.ok
    assert result.session.version == 1
    assert stored.version == 1
    assert [message.content for message in stored.messages] == ["slow"]


def test_sqlite_commit_completes_after_caller_gives_up(tmp_path) -> None:
    path = tmp_path / "sessions.db"
    store = SqliteStateStore(path, StateConfig(operation_timeout_seconds=2.0))

    async def _run() -> Session:
        await store.get("s-1")
        blocker = sqlite3.connect(path, isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(store.commit("s-1", _append("landed")), timeout=0.1)
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()
        for _ in range(40):
            session = await store.get("s-1")
            if session.version:
                return session
            await asyncio.sleep(0.05)
        return session

    session = asyncio.run(_run())

    assert session.version == 1
    assert [message.content for message in session.messages] == ["landed"]
