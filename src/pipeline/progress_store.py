"""Session-scoped progress tracking and cooperative cancellation.

Every parse job gets a :class:`ParseSession` holding one
:class:`FileProgress` per input.  Stages report through this store; a
client polls it by session id.

# ─── HOW PROGRESS TRACKING WORKS ───────────────────────────────────────
#
#   IntakePipeline ──update_file()──→ ProgressSessionStore ──→ ISessionStore
#                                            │
#                                            └──callback()──→ listeners
#
#   - File stages only move forward (see src/models/session.py).  A
#     backward move raises ValueError; updates to a file that is already
#     terminal are ignored, because a cancelled job can still have a
#     provider call in flight that reports back late.
#   - Percent never decreases.  Entering a stage lifts the percent to at
#     least that stage's base percent.
#   - request_cancellation() flips the session's CancellationToken.  The
#     running job notices at its next checkpoint and calls
#     cancel_remaining(), which finishes the session as CANCELLED.
#   - Listener errors are caught and logged, so one broken listener can't
#     block the pipeline.
#   - A background task reaps idle sessions every sweep interval.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
import secrets
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.interfaces.session_store import ISessionStore
from src.models.session import FileProgress, FileStage, ParseSession, SessionStatus
from src.providers.session.memory_session_store import InMemorySessionStore
from src.utils.cancellation import CancellationToken
from src.utils.errors import SessionNotFoundError
from src.utils.logging import get_logger


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


def new_session_id() -> str:
    """Opaque session id: ``session_<epoch ms>_<random hex>``."""
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class ProgressSessionStore:
    """Tracks multi-file job progress and cancellation per session.

    Parameters
    ----------
    store:
        Session storage backend; defaults to an :class:`InMemorySessionStore`.
    sweep_interval_seconds:
        How often the background task reaps expired sessions.
    """

    def __init__(
        self,
        store: ISessionStore | None = None,
        sweep_interval_seconds: float = 5 * 60,
    ) -> None:
        self._store = store or InMemorySessionStore()
        self._sweep_interval = sweep_interval_seconds
        self._tokens: dict[str, CancellationToken] = {}
        self._listeners: dict[str, list[Callable]] = {}
        self._sweep_task: asyncio.Task | None = None
        self._logger: structlog.BoundLogger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def create_session(
        self,
        files: list[tuple[str, int | None]],
        organization_id: str | None = None,
        user_id: str | None = None,
    ) -> ParseSession:
        """Create a PENDING session with one QUEUED entry per ``(name, size)``."""
        session = ParseSession(
            id=new_session_id(),
            files=[
                FileProgress(index=index, name=name, size_bytes=size, message="Queued")
                for index, (name, size) in enumerate(files)
            ],
            organization_id=organization_id,
            user_id=user_id,
        )
        await self._store.set(session)
        self._tokens[session.id] = CancellationToken(session.id)
        self._logger.info(
            "session_created",
            session_id=session.id,
            files=len(files),
            organization_id=organization_id,
        )
        return session

    async def get(self, session_id: str) -> ParseSession:
        """Return the session.

        Raises
        ------
        SessionNotFoundError
            If the id is unknown or the session was reaped.
        """
        session = await self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found or expired: {session_id}")
        return self._with_derived(session)

    async def progress(self, session_id: str) -> list[FileProgress]:
        """Return the per-file progress list of a session."""
        return (await self.get(session_id)).files

    def token(self, session_id: str) -> CancellationToken:
        """Return the cancellation token of a session.

        Raises
        ------
        SessionNotFoundError
            If no token exists for the id.
        """
        token = self._tokens.get(session_id)
        if token is None:
            raise SessionNotFoundError(f"Session not found or expired: {session_id}")
        return token

    async def request_cancellation(self, session_id: str, reason: str = "Cancelled by user") -> bool:
        """Ask a running session to stop at its next checkpoint.

        Returns
        -------
        bool
            ``False`` for an unknown session or one that is not pending or
            processing.
        """
        accepted = False

        def _mutate(session: ParseSession) -> ParseSession:
            nonlocal accepted
            if session.status not in (SessionStatus.PENDING, SessionStatus.PROCESSING):
                return session
            accepted = True
            return session.model_copy(
                update={
                    "cancellation_requested": True,
                    "status": SessionStatus.CANCELLING,
                    "updated_at": _utcnow(),
                }
            )

        updated = await self._store.update(session_id, _mutate)
        if updated is None or not accepted:
            self._logger.info("session_cancel_rejected", session_id=session_id, known=updated is not None)
            return False

        token = self._tokens.get(session_id)
        if token is not None:
            token.cancel(reason)
        self._logger.info("session_cancel_requested", session_id=session_id)
        return True

    # ------------------------------------------------------------------
    # File progress
    # ------------------------------------------------------------------

    async def update_file(
        self,
        session_id: str,
        index: int,
        stage: FileStage | None = None,
        percent: float | None = None,
        message: str | None = None,
        result_summary: dict[str, Any] | None = None,
    ) -> FileProgress:
        """Advance one file.

        Parameters
        ----------
        stage:
            New stage; ``None`` keeps the current one.  Must not be earlier
            than the current stage.
        percent:
            New percent; values below the current percent are ignored.
        message:
            Status message shown to pollers.
        result_summary:
            Counts to attach when the file finishes.

        Raises
        ------
        SessionNotFoundError
            If the session is unknown or expired.
        ValueError
            For a backward stage transition.
        """
        changed: FileProgress | None = None

        def _mutate(session: ParseSession) -> ParseSession:
            nonlocal changed
            files = list(session.files)
            current = files[index]
            if current.stage.is_terminal:
                changed = current
                return session
            updated = self._transition(current, stage, percent, message, result_summary)
            files[index] = updated
            changed = updated
            status = session.status
            if status == SessionStatus.PENDING:
                status = SessionStatus.PROCESSING
            return self._with_derived(
                session.model_copy(update={"files": files, "status": status, "updated_at": _utcnow()})
            )

        session = await self._store.update(session_id, _mutate)
        if session is None or changed is None:
            raise SessionNotFoundError(f"Session not found or expired: {session_id}")

        self._logger.debug(
            "file_progress",
            session_id=session_id,
            file_index=index,
            stage=changed.stage.value,
            percent=round(changed.percent, 1),
            message=changed.message,
        )
        await self._notify_listeners(session_id, changed)
        return changed

    async def complete_file(self, session_id: str, index: int, result_summary: dict[str, Any]) -> FileProgress:
        return await self.update_file(
            session_id,
            index,
            stage=FileStage.COMPLETE,
            percent=100.0,
            message=f"Parsed {result_summary.get('parsed', 0)} parts",
            result_summary=result_summary,
        )

    async def fail_file(self, session_id: str, index: int, message: str) -> FileProgress:
        return await self.update_file(session_id, index, stage=FileStage.FAILED, message=message)

    async def cancel_remaining(self, session_id: str) -> ParseSession:
        """Mark every non-terminal file CANCELLED; the session ends CANCELLED."""
        session = await self.get(session_id)
        for file in session.files:
            if not file.stage.is_terminal:
                await self.update_file(session_id, file.index, stage=FileStage.CANCELLED, message="Cancelled")
        final = await self.get(session_id)
        self._logger.info("session_cancelled", session_id=session_id)
        return final

    async def fail_remaining(self, session_id: str, message: str) -> ParseSession:
        """Mark every non-terminal file FAILED so pollers see the job end."""
        session = await self.get(session_id)
        for file in session.files:
            if not file.stage.is_terminal:
                await self.fail_file(session_id, file.index, message)
        self._logger.warning("session_failed", session_id=session_id, reason=message)
        return await self.get(session_id)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def register_listener(self, session_id: str, callback: Callable) -> None:
        """Register a sync or async ``callback(session_id, file_progress)``."""
        listeners = self._listeners.setdefault(session_id, [])
        if callback not in listeners:
            listeners.append(callback)

    def unregister_listener(self, session_id: str, callback: Callable) -> None:
        listeners = self._listeners.get(session_id, [])
        if callback in listeners:
            listeners.remove(callback)

    async def _notify_listeners(self, session_id: str, file: FileProgress) -> None:
        for callback in self._listeners.get(session_id, []):
            try:
                result = callback(session_id, file)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._logger.warning(
                    "listener_callback_error",
                    session_id=session_id,
                    error=str(exc),
                    callback=getattr(callback, "__name__", repr(callback)),
                )

    # ------------------------------------------------------------------
    # Reaping
    # ------------------------------------------------------------------

    async def sweep(self) -> int:
        """Reap expired sessions and forget their tokens and listeners."""
        reaped = await self._store.sweep()
        for session_id in list(self._tokens):
            if await self._store.get(session_id) is None:
                self._tokens.pop(session_id, None)
                self._listeners.pop(session_id, None)
        return reaped

    def start(self) -> None:
        """Start the periodic sweep task (idempotent)."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the periodic sweep task."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception as exc:
                self._logger.warning("session_sweep_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    @staticmethod
    def _transition(
        current: FileProgress,
        stage: FileStage | None,
        percent: float | None,
        message: str | None,
        result_summary: dict[str, Any] | None,
    ) -> FileProgress:
        new_stage = stage or current.stage
        terminal_exit = new_stage in (FileStage.FAILED, FileStage.CANCELLED)
        if not terminal_exit and new_stage.ordinal < current.stage.ordinal:
            raise ValueError(f"Illegal stage transition {current.stage.value} -> {new_stage.value}")

        new_percent = current.percent
        if new_stage != current.stage and not terminal_exit:
            new_percent = max(new_percent, new_stage.base_percent)
        if percent is not None:
            new_percent = max(new_percent, min(100.0, percent))

        update: dict[str, Any] = {"stage": new_stage, "percent": new_percent}
        if message is not None:
            update["message"] = message
        if result_summary is not None:
            update["result_summary"] = result_summary
        if current.started_at is None and new_stage != FileStage.QUEUED:
            update["started_at"] = _utcnow()
        if new_stage.is_terminal:
            update["completed_at"] = _utcnow()
        return current.model_copy(update=update)

    @staticmethod
    def _with_derived(session: ParseSession) -> ParseSession:
        """Recompute overall percent, ETA and status from the files."""
        files = session.files
        overall = sum(f.percent for f in files) / len(files) if files else 0.0

        status = session.status
        if files and all(f.stage.is_terminal for f in files):
            if session.cancellation_requested or all(f.stage == FileStage.CANCELLED for f in files):
                status = SessionStatus.CANCELLED
            elif any(f.stage == FileStage.COMPLETE for f in files):
                status = SessionStatus.COMPLETED
            else:
                status = SessionStatus.FAILED
        elif session.cancellation_requested and not status.is_terminal:
            status = SessionStatus.CANCELLING

        eta: float | None = None
        if not status.is_terminal and 0.0 < overall < 100.0:
            elapsed = (_utcnow() - session.created_at).total_seconds()
            eta = round(elapsed * (100.0 - overall) / overall, 1)
        elif status.is_terminal:
            eta = 0.0

        return session.model_copy(
            update={"overall_percent": round(overall, 2), "status": status, "eta_seconds": eta}
        )
