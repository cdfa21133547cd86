"""Unit tests for InMemorySessionStore and ProgressSessionStore."""

from __future__ import annotations

import pytest
import pytest_asyncio

from src.models.session import FileStage, ParseSession, SessionStatus
from src.pipeline.progress_store import ProgressSessionStore, new_session_id
from src.providers.session.memory_session_store import InMemorySessionStore
from src.utils.errors import JobCancelledError, SessionNotFoundError


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# ======================================================================
# InMemorySessionStore
# ======================================================================


class TestInMemorySessionStore:
    @pytest.fixture()
    def clock(self) -> _FakeClock:
        return _FakeClock()

    @pytest.fixture()
    def store(self, clock: _FakeClock) -> InMemorySessionStore:
        return InMemorySessionStore(ttl_seconds=60, clock=clock)

    @pytest.mark.asyncio
    async def test_set_and_get(self, store: InMemorySessionStore) -> None:
        session = ParseSession(id="s1")
        await store.set(session)
        assert await store.get("s1") == session
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_update_applies_mutation(self, store: InMemorySessionStore) -> None:
        await store.set(ParseSession(id="s1"))
        updated = await store.update("s1", lambda s: s.model_copy(update={"user_id": "u1"}))
        assert updated is not None
        assert (await store.get("s1")).user_id == "u1"

    @pytest.mark.asyncio
    async def test_update_unknown_returns_none(self, store: InMemorySessionStore) -> None:
        assert await store.update("missing", lambda s: s) is None

    @pytest.mark.asyncio
    async def test_unknown_ids_leave_no_lock_behind(self, store: InMemorySessionStore) -> None:
        for index in range(20):
            await store.update(f"bogus-{index}", lambda s: s)
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_sweep_drops_orphaned_locks(self, store: InMemorySessionStore) -> None:
        await store.set(ParseSession(id="s1"))
        store._lock("gone")
        await store.sweep()
        assert set(store._locks) == {"s1"}

    @pytest.mark.asyncio
    async def test_expired_session_is_gone(self, store: InMemorySessionStore, clock: _FakeClock) -> None:
        await store.set(ParseSession(id="s1"))
        clock.now += 60
        assert await store.get("s1") is None

    @pytest.mark.asyncio
    async def test_writes_refresh_ttl(self, store: InMemorySessionStore, clock: _FakeClock) -> None:
        await store.set(ParseSession(id="s1"))
        clock.now += 50
        await store.update("s1", lambda s: s)
        clock.now += 50
        assert await store.get("s1") is not None

    @pytest.mark.asyncio
    async def test_sweep_reaps_only_expired(self, store: InMemorySessionStore, clock: _FakeClock) -> None:
        await store.set(ParseSession(id="old"))
        clock.now += 45
        await store.set(ParseSession(id="new"))
        clock.now += 20

        assert await store.sweep() == 1
        assert await store.get("old") is None
        assert await store.get("new") is not None

    @pytest.mark.asyncio
    async def test_delete(self, store: InMemorySessionStore) -> None:
        await store.set(ParseSession(id="s1"))
        assert await store.delete("s1") is True
        assert await store.delete("s1") is False


# ======================================================================
# ProgressSessionStore
# ======================================================================


class TestProgressSessionStore:
    @pytest.fixture()
    def clock(self) -> _FakeClock:
        return _FakeClock()

    @pytest.fixture()
    def progress(self, clock: _FakeClock) -> ProgressSessionStore:
        return ProgressSessionStore(store=InMemorySessionStore(ttl_seconds=60, clock=clock))

    @pytest_asyncio.fixture
    async def session_id(self, progress: ProgressSessionStore) -> str:
        session = await progress.create_session([("a.csv", 100), ("b.png", 2048)], organization_id="org-1")
        return session.id

    def test_session_id_format(self) -> None:
        session_id = new_session_id()
        prefix, millis, token = session_id.split("_")
        assert prefix == "session"
        assert millis.isdigit()
        assert len(token) == 8

    @pytest.mark.asyncio
    async def test_create_session(self, progress: ProgressSessionStore, session_id: str) -> None:
        session = await progress.get(session_id)
        assert session.status == SessionStatus.PENDING
        assert [f.name for f in session.files] == ["a.csv", "b.png"]
        assert all(f.stage == FileStage.QUEUED for f in session.files)
        assert session.organization_id == "org-1"
        assert progress.token(session_id).cancelled is False

    @pytest.mark.asyncio
    async def test_unknown_session(self, progress: ProgressSessionStore) -> None:
        with pytest.raises(SessionNotFoundError):
            await progress.get("session_0_deadbeef")
        with pytest.raises(SessionNotFoundError):
            progress.token("session_0_deadbeef")

    @pytest.mark.asyncio
    async def test_forward_progress(self, progress: ProgressSessionStore, session_id: str) -> None:
        await progress.update_file(session_id, 0, stage=FileStage.UPLOADING)
        file = await progress.update_file(session_id, 0, stage=FileStage.PARSING, message="Parsing rows")

        assert file.stage == FileStage.PARSING
        assert file.percent == FileStage.PARSING.base_percent
        assert file.message == "Parsing rows"
        assert file.started_at is not None
        session = await progress.get(session_id)
        assert session.status == SessionStatus.PROCESSING
        assert session.overall_percent == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_backward_stage_raises(self, progress: ProgressSessionStore, session_id: str) -> None:
        await progress.update_file(session_id, 0, stage=FileStage.VALIDATING)
        with pytest.raises(ValueError, match="Illegal stage transition"):
            await progress.update_file(session_id, 0, stage=FileStage.PARSING)

    @pytest.mark.asyncio
    async def test_percent_never_decreases(self, progress: ProgressSessionStore, session_id: str) -> None:
        await progress.update_file(session_id, 0, stage=FileStage.PARSING, percent=55.0)
        file = await progress.update_file(session_id, 0, percent=45.0)
        assert file.percent == 55.0

    @pytest.mark.asyncio
    async def test_terminal_file_ignores_updates(self, progress: ProgressSessionStore, session_id: str) -> None:
        await progress.complete_file(session_id, 0, {"parsed": 3})
        file = await progress.update_file(session_id, 0, stage=FileStage.FAILED, message="late")

        assert file.stage == FileStage.COMPLETE
        assert file.message == "Parsed 3 parts"
        assert file.result_summary == {"parsed": 3}
        assert file.completed_at is not None

    @pytest.mark.asyncio
    async def test_failed_file_from_any_stage(self, progress: ProgressSessionStore, session_id: str) -> None:
        await progress.update_file(session_id, 0, stage=FileStage.VALIDATING)
        file = await progress.fail_file(session_id, 0, "Unreadable workbook")
        assert file.stage == FileStage.FAILED
        assert file.message == "Unreadable workbook"

    @pytest.mark.asyncio
    async def test_session_status_from_files(self, progress: ProgressSessionStore, session_id: str) -> None:
        await progress.complete_file(session_id, 0, {"parsed": 2})
        await progress.fail_file(session_id, 1, "No parts")
        session = await progress.get(session_id)
        assert session.status == SessionStatus.COMPLETED
        assert session.eta_seconds == 0.0

    @pytest.mark.asyncio
    async def test_all_failed_session(self, progress: ProgressSessionStore, session_id: str) -> None:
        await progress.fail_file(session_id, 0, "bad")
        await progress.fail_file(session_id, 1, "bad")
        assert (await progress.get(session_id)).status == SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_fail_remaining(self, progress: ProgressSessionStore, session_id: str) -> None:
        await progress.complete_file(session_id, 0, {"parsed": 1})
        final = await progress.fail_remaining(session_id, "Internal error: boom")
        assert [f.stage for f in final.files] == [FileStage.COMPLETE, FileStage.FAILED]
        assert final.files[1].message == "Internal error: boom"
        assert final.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancellation_flow(self, progress: ProgressSessionStore, session_id: str) -> None:
        await progress.update_file(session_id, 0, stage=FileStage.PARSING)

        assert await progress.request_cancellation(session_id) is True
        session = await progress.get(session_id)
        assert session.status == SessionStatus.CANCELLING
        assert session.cancellation_requested is True

        token = progress.token(session_id)
        with pytest.raises(JobCancelledError):
            token.raise_if_cancelled("parsing")

        final = await progress.cancel_remaining(session_id)
        assert final.status == SessionStatus.CANCELLED
        assert all(f.stage == FileStage.CANCELLED for f in final.files)

    @pytest.mark.asyncio
    async def test_cancel_finished_session_rejected(
        self, progress: ProgressSessionStore, session_id: str
    ) -> None:
        await progress.complete_file(session_id, 0, {"parsed": 1})
        await progress.complete_file(session_id, 1, {"parsed": 1})
        assert await progress.request_cancellation(session_id) is False
        assert progress.token(session_id).cancelled is False

    @pytest.mark.asyncio
    async def test_cancel_unknown_session(self, progress: ProgressSessionStore) -> None:
        assert await progress.request_cancellation("session_0_deadbeef") is False

    @pytest.mark.asyncio
    async def test_listeners(self, progress: ProgressSessionStore, session_id: str) -> None:
        seen: list[tuple[str, FileStage]] = []

        async def on_update(sid, file):
            seen.append((sid, file.stage))

        def broken(sid, file):
            raise RuntimeError("listener bug")

        progress.register_listener(session_id, broken)
        progress.register_listener(session_id, on_update)
        progress.register_listener(session_id, on_update)
        await progress.update_file(session_id, 0, stage=FileStage.DETECTING)
        progress.unregister_listener(session_id, on_update)
        await progress.update_file(session_id, 0, stage=FileStage.PARSING)

        assert seen == [(session_id, FileStage.DETECTING)]

    @pytest.mark.asyncio
    async def test_sweep_forgets_tokens(
        self, progress: ProgressSessionStore, session_id: str, clock: _FakeClock
    ) -> None:
        clock.now += 120
        assert await progress.sweep() == 1
        with pytest.raises(SessionNotFoundError):
            progress.token(session_id)

    @pytest.mark.asyncio
    async def test_start_and_stop(self, progress: ProgressSessionStore) -> None:
        progress.start()
        progress.start()
        await progress.stop()
        await progress.stop()
