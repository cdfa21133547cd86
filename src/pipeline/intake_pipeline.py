"""Intake pipeline facade: raw inputs in, reviewed part drafts out.

Coordinates the normalizer, the deterministic parsers, the AI provider
chain, confidence review and progress tracking for one parse job.

ARCHITECTURE NOTE:
    Each input file moves through the same sequence, reporting every
    stage to the ProgressSessionStore:

        1. UPLOADING   -- bytes are read (or fetched from a signed URL)
        2. DETECTING   -- RawInputNormalizer classifies and tokenizes
        3. PARSING     -- deterministic parser first; the provider chain
           (or OCR)       only when it finds too little, or for scans
        4. VALIDATING  -- ConfidenceScorer flags parts for review
        5. COMPLETE    -- finalized in bulk once every file is done

    Files are processed one after another; the only fan-out is the final
    bulk step (progress finalization and the result sink), which is
    bounded by ``bulk_apply``.

    Failure handling prefers partial success: an unreadable file fails on
    its own, a provider outage falls back to the deterministic parser
    (``DegradedModeError``), and only a job where nothing at all could be
    parsed raises :class:`FatalJobError`.
"""

from __future__ import annotations

import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog

from src.interfaces.cache_provider import IResultCache
from src.models.inputs import InputKind, NormalizedInput, RawInput
from src.models.parts import ParseOptions, ParseOutcome, ParseStats, PartDraft, RowError, SourceMethod
from src.models.provider import ProviderResult
from src.models.session import FileProgress, FileStage, ParseSession
from src.pipeline.orchestrator import ResilientOrchestrator
from src.pipeline.progress_store import ProgressSessionStore
from src.providers.cache.result_cache import compute_fingerprint
from src.services.confidence_scorer import ConfidenceScorer
from src.services.deterministic_parser import DeterministicParser
from src.services.input_normalizer import RawInputNormalizer
from src.utils.cancellation import CancellationToken, never_cancelled
from src.utils.concurrency import DEFAULT_BULK_CONCURRENCY, bulk_apply
from src.utils.errors import (
    CutIntakeError,
    DegradedModeError,
    FatalJobError,
    InputError,
    JobCancelledError,
    SessionNotFoundError,
)
from src.utils.logging import bind_job_context, get_logger

# A deterministic parse that turns at least this share of rows into parts
# is accepted without asking a provider.
DETERMINISTIC_ACCEPT_RATE = 0.8

SINK_BATCH_SIZE = 100

ResultSink = Callable[[str | None, list[PartDraft]], Awaitable[Any]]


@dataclass
class _FileOutcome:
    """What one input file produced."""

    parts: list[PartDraft] = field(default_factory=list)
    row_errors: list[RowError] = field(default_factory=list)
    method: SourceMethod | None = None
    provider_used: str | None = None
    total_rows: int = 0
    skipped: int = 0
    flagged: int = 0
    cache_hit: bool = False
    degraded: bool = False
    failed: bool = False

    def summary(self) -> dict[str, Any]:
        return {
            "parsed": len(self.parts),
            "errors": len(self.row_errors),
            "flagged": self.flagged,
            "method": self.method.value if self.method else None,
            "provider": self.provider_used,
            "cache_hit": self.cache_hit,
            "degraded": self.degraded,
        }


class IntakePipeline:
    """Public entry point of the ingestion pipeline.

    All collaborators are injected; ``src/main.py`` wires the defaults.

    Parameters
    ----------
    orchestrator:
        Provider chain used when deterministic parsing is not enough.
    progress:
        Session store for progress and cancellation.
    normalizer / parser / scorer:
        Stage components; defaults are constructed when omitted.
    cache:
        Result cache shared with the orchestrator; only read for metrics.
    sink:
        Optional ``async sink(session_id, parts)`` receiving the parsed
        parts in batches.
    http_client:
        Client used by :meth:`fetch_signed_url`; a short-lived one is
        created per call when omitted.
    """

    def __init__(
        self,
        orchestrator: ResilientOrchestrator,
        progress: ProgressSessionStore,
        normalizer: RawInputNormalizer | None = None,
        parser: DeterministicParser | None = None,
        scorer: ConfidenceScorer | None = None,
        cache: IResultCache | None = None,
        sink: ResultSink | None = None,
        http_client: httpx.AsyncClient | None = None,
        fetch_timeout_seconds: float = 20.0,
        bulk_concurrency: int = DEFAULT_BULK_CONCURRENCY,
    ) -> None:
        self._orchestrator = orchestrator
        self._progress = progress
        self._normalizer = normalizer or RawInputNormalizer()
        self._parser = parser or DeterministicParser()
        self._scorer = scorer or ConfidenceScorer()
        self._cache = cache
        self._sink = sink
        self._http_client = http_client
        self._fetch_timeout = fetch_timeout_seconds
        self._bulk_concurrency = bulk_concurrency
        self._logger: structlog.BoundLogger = get_logger(__name__)
        self._perf: dict[str, Any] = {
            "jobs": 0,
            "fatal_jobs": 0,
            "cancelled_jobs": 0,
            "files": 0,
            "failed_files": 0,
            "degraded_files": 0,
            "parts": 0,
            "flagged_parts": 0,
            "total_processing_ms": 0.0,
        }
        self._provider_usage: Counter[str] = Counter()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def parse(
        self,
        inputs: list[RawInput],
        options: ParseOptions | None = None,
        *,
        organization_id: str | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> ParseOutcome:
        """Parse every input into reviewed part drafts.

        Parameters
        ----------
        inputs:
            Raw inputs of one job.
        options:
            Parse options; defaults apply when omitted.
        organization_id / user_id:
            Caller identity, recorded on the session and in logs.
        session_id:
            A session from :meth:`open_session`, for callers that hand the
            id out before the job runs.  Without one, a session is created
            when ``options.track_progress`` is set.

        Returns
        -------
        ParseOutcome
            Parts from every file that parsed, per-row errors and stats.
            A cancelled job returns no parts.

        Raises
        ------
        InputError
            If *inputs* is empty.
        FatalJobError
            If no input produced a single part, or the job died on an
            unexpected error (every unfinished file is then marked FAILED).
        """
        if not inputs:
            raise InputError("No inputs supplied")
        options = options or ParseOptions()
        started = time.monotonic()

        token = never_cancelled()
        if session_id is None and options.track_progress:
            session_id = await self.open_session(inputs, organization_id=organization_id, user_id=user_id)
        if session_id is not None:
            token = self._progress.token(session_id)

        with bind_job_context(session_id=session_id, organization_id=organization_id, user_id=user_id):
            self._logger.info("parse_job_started", inputs=len(inputs), use_ai=options.use_ai)
            try:
                return await self._run_job(inputs, options, session_id, token, started)
            except CutIntakeError:
                raise
            except Exception as exc:
                self._perf["fatal_jobs"] += 1
                self._logger.exception("parse_job_crashed", error=str(exc))
                if session_id is not None:
                    try:
                        await self._progress.fail_remaining(session_id, f"Internal error: {exc}")
                    except SessionNotFoundError:
                        self._logger.debug("progress_session_gone", session_id=session_id)
                raise FatalJobError(f"Parse job failed unexpectedly: {exc}") from exc

    async def _run_job(
        self,
        inputs: list[RawInput],
        options: ParseOptions,
        session_id: str | None,
        token: CancellationToken,
        started: float,
    ) -> ParseOutcome:
        outcomes, cancelled = await self._process_all(inputs, options, session_id, token)
        cancelled = cancelled or token.cancelled

        if cancelled:
            if session_id is not None:
                await self._progress.cancel_remaining(session_id)
            self._perf["cancelled_jobs"] += 1
            outcome = self._build_outcome([], outcomes, session_id, started, len(inputs))
            self._logger.info("parse_job_cancelled", files_done=len(outcomes))
            self._record(outcome)
            return outcome

        await self._finalize(session_id, outcomes)
        parts = [part for index in sorted(outcomes) for part in outcomes[index].parts]
        outcome = self._build_outcome(parts, outcomes, session_id, started, len(inputs))
        self._record(outcome)

        if not parts:
            self._perf["fatal_jobs"] += 1
            self._logger.error("parse_job_failed", inputs=len(inputs), errors=len(outcome.row_errors))
            reasons = "; ".join(error.message for error in outcome.row_errors[:3])
            raise FatalJobError(f"No parts could be extracted from {len(inputs)} input(s): {reasons}")

        await self._deliver(session_id, parts)
        self._logger.info(
            "parse_job_completed",
            parts=outcome.stats.parsed,
            failed=outcome.stats.failed,
            flagged=outcome.stats.flagged_for_review,
            duration_ms=outcome.stats.processing_time_ms,
        )
        return outcome

    async def open_session(
        self,
        inputs: list[RawInput],
        organization_id: str | None = None,
        user_id: str | None = None,
    ) -> str:
        """Create the progress session for *inputs* and return its id."""
        session = await self._progress.create_session(
            [(raw.display_name, raw.size_bytes) for raw in inputs],
            organization_id=organization_id,
            user_id=user_id,
        )
        return session.id

    async def progress(self, session_id: str) -> list[FileProgress]:
        """Per-file progress of a session.

        Raises
        ------
        SessionNotFoundError
            If the session is unknown or expired.
        """
        return await self._progress.progress(session_id)

    async def session(self, session_id: str) -> ParseSession:
        return await self._progress.get(session_id)

    async def request_cancellation(self, session_id: str) -> bool:
        """Ask a running job to stop; see ``ProgressSessionStore.request_cancellation``."""
        return await self._progress.request_cancellation(session_id)

    def metrics(self) -> dict[str, Any]:
        """Cache statistics and job performance counters."""
        perf = dict(self._perf)
        jobs = perf["jobs"]
        perf["avg_processing_ms"] = round(perf["total_processing_ms"] / jobs, 2) if jobs else 0.0
        perf["total_processing_ms"] = round(perf["total_processing_ms"], 2)
        perf["provider_usage"] = dict(self._provider_usage)
        return {
            "cache_stats": self._cache.stats() if self._cache is not None else {},
            "performance_metrics": perf,
        }

    async def fetch_signed_url(
        self,
        url: str,
        filename: str | None = None,
        mime_type: str | None = None,
    ) -> RawInput:
        """Download an input from a signed storage URL.

        Raises
        ------
        InputError
            On a non-2xx response, a timeout or any transport error.
        """
        # Signed URLs carry credentials in the query string; never log it.
        parsed = urlparse(url)
        safe_url = f"{parsed.scheme}://{parsed.netloc}{parsed.path}"
        try:
            if self._http_client is not None:
                response = await self._http_client.get(url, timeout=self._fetch_timeout)
            else:
                async with httpx.AsyncClient(timeout=self._fetch_timeout) as client:
                    response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._logger.warning("signed_url_fetch_failed", url=safe_url, status=exc.response.status_code)
            raise InputError(f"Fetching {safe_url} failed with HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            self._logger.warning("signed_url_fetch_failed", url=safe_url, error=str(exc))
            raise InputError(f"Fetching {safe_url} failed: {exc}") from exc

        self._logger.info("signed_url_fetched", url=safe_url, bytes=len(response.content))
        return RawInput(
            content=response.content,
            filename=filename or PurePosixPath(parsed.path).name or None,
            mime_type=mime_type or response.headers.get("content-type"),
        )

    # ------------------------------------------------------------------
    # Per-file processing
    # ------------------------------------------------------------------

    async def _process_all(
        self,
        inputs: list[RawInput],
        options: ParseOptions,
        session_id: str | None,
        token: CancellationToken,
    ) -> tuple[dict[int, _FileOutcome], bool]:
        outcomes: dict[int, _FileOutcome] = {}
        for index, raw in enumerate(inputs):
            try:
                token.raise_if_cancelled(f"file {index}")
                outcome = await self._process_file(index, raw, options, session_id, token)
            except JobCancelledError as exc:
                self._logger.info("parse_job_cancel_observed", file_index=index, reason=exc.message)
                return outcomes, True
            except InputError as exc:
                self._logger.warning("input_rejected", file_index=index, name=raw.display_name, error=exc.message)
                outcome = _FileOutcome(
                    row_errors=[RowError(source_ref=raw.display_name, message=exc.message)],
                    failed=True,
                )

            if len(inputs) > 1:
                outcome.row_errors = [
                    error.model_copy(update={"source_ref": f"{raw.display_name}:{error.source_ref}"})
                    if error.source_ref != raw.display_name
                    else error
                    for error in outcome.row_errors
                ]
            if not outcome.parts:
                outcome.failed = True
                message = outcome.row_errors[0].message if outcome.row_errors else "No parts found"
                await self._fail(session_id, index, message)
            outcomes[index] = outcome
        return outcomes, False

    async def _process_file(
        self,
        index: int,
        raw: RawInput,
        options: ParseOptions,
        session_id: str | None,
        token: CancellationToken,
    ) -> _FileOutcome:
        await self._advance(session_id, index, FileStage.UPLOADING, f"Reading {raw.display_name}")
        normalized = self._normalizer.normalize(raw)
        await self._advance(session_id, index, FileStage.DETECTING, f"Detected {normalized.kind.value} input")
        token.raise_if_cancelled("after detection")

        if normalized.kind.is_binary_document and not normalized.has_text:
            outcome = await self._extract_scanned(index, normalized, options, session_id, token)
        else:
            outcome = await self._parse_textual(index, normalized, options, session_id, token)

        token.raise_if_cancelled("before validation")
        if not outcome.parts:
            return outcome
        await self._advance(session_id, index, FileStage.VALIDATING, "Scoring confidence")
        reviewed, flagged = self._scorer.review(outcome.parts, options.confidence_level)
        return replace(outcome, parts=reviewed, flagged=flagged)

    async def _parse_textual(
        self,
        index: int,
        normalized: NormalizedInput,
        options: ParseOptions,
        session_id: str | None,
        token: CancellationToken,
    ) -> _FileOutcome:
        """Deterministic parse first; the provider chain only when it falls short."""
        await self._advance(session_id, index, FileStage.PARSING, "Parsing rows")
        batch = self._parser.parse(normalized, options)
        outcome = _FileOutcome(
            parts=batch.parts,
            row_errors=batch.row_errors,
            method=batch.method,
            total_rows=batch.total_rows,
            skipped=batch.skipped,
        )
        if not options.use_ai or (batch.parts and batch.success_rate >= DETERMINISTIC_ACCEPT_RATE):
            return outcome

        operation = "document" if normalized.kind == InputKind.PDF else "text"
        payload: str | NormalizedInput = normalized if operation == "document" else normalized.text
        await self._advance(session_id, index, FileStage.PARSING, "Extracting parts with AI", percent=50.0)
        try:
            result, cache_hit = await self._orchestrator.run_cached(
                compute_fingerprint(normalized.text, options, operation),
                operation,
                payload,
                options,
                session_id=session_id,
                file_index=index,
                token=token,
            )
        except DegradedModeError as exc:
            self._logger.warning(
                "deterministic_fallback",
                file_index=index,
                reason=exc.message,
                parts=len(batch.parts),
            )
            return replace(outcome, degraded=True)

        if len(result.parts) < len(batch.parts):
            self._logger.info(
                "ai_result_discarded",
                file_index=index,
                ai_parts=len(result.parts),
                deterministic_parts=len(batch.parts),
            )
            return outcome
        return self._from_provider(result, cache_hit, total_rows=batch.total_rows or len(result.parts))

    async def _extract_scanned(
        self,
        index: int,
        normalized: NormalizedInput,
        options: ParseOptions,
        session_id: str | None,
        token: CancellationToken,
    ) -> _FileOutcome:
        """Images and text-less PDFs go straight to a vision provider."""
        if not options.use_ai:
            raise InputError(f"{normalized.name}: {normalized.kind.value} input needs AI extraction, which is disabled")

        await self._advance(session_id, index, FileStage.OCR, "Reading scanned document")
        operation = "image" if normalized.kind == InputKind.IMAGE else "document"
        payload: bytes | NormalizedInput = (normalized.payload or b"") if operation == "image" else normalized
        try:
            result, cache_hit = await self._orchestrator.run_cached(
                compute_fingerprint(normalized.payload or b"", options, operation),
                operation,
                payload,
                options,
                session_id=session_id,
                file_index=index,
                token=token,
            )
        except DegradedModeError as exc:
            self._logger.warning("scanned_input_unreadable", file_index=index, reason=exc.message)
            return _FileOutcome(
                row_errors=[RowError(source_ref=normalized.name, message=exc.message)],
                degraded=True,
            )
        return self._from_provider(result, cache_hit, total_rows=len(result.parts))

    @staticmethod
    def _from_provider(result: ProviderResult, cache_hit: bool, total_rows: int) -> _FileOutcome:
        source = result.provider_name or "provider"
        return _FileOutcome(
            parts=list(result.parts),
            row_errors=[RowError(source_ref=source, message=error) for error in result.errors],
            method=SourceMethod.AI,
            provider_used=result.provider_name,
            total_rows=total_rows,
            cache_hit=cache_hit,
        )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _finalize(self, session_id: str | None, outcomes: dict[int, _FileOutcome]) -> None:
        """Mark every file that produced parts COMPLETE, in a bounded fan-out."""
        if session_id is None:
            return
        done = [(index, outcome) for index, outcome in sorted(outcomes.items()) if not outcome.failed]

        async def _complete(item: tuple[int, _FileOutcome]) -> FileProgress:
            index, outcome = item
            return await self._progress.complete_file(session_id, index, outcome.summary())

        await bulk_apply(
            _complete,
            done,
            limit=self._bulk_concurrency,
            logger=self._logger,
            error_msg="file_finalize_failed",
        )

    async def _deliver(self, session_id: str | None, parts: list[PartDraft]) -> None:
        """Hand the parts to the result sink in batches."""
        if self._sink is None:
            return
        batches = [parts[i : i + SINK_BATCH_SIZE] for i in range(0, len(parts), SINK_BATCH_SIZE)]

        async def _send(batch: list[PartDraft]) -> Any:
            return await self._sink(session_id, batch)

        delivered = await bulk_apply(
            _send,
            batches,
            limit=self._bulk_concurrency,
            logger=self._logger,
            error_msg="result_sink_failed",
        )
        self._logger.info("results_delivered", batches=len(batches), delivered=len(delivered))

    def _build_outcome(
        self,
        parts: list[PartDraft],
        outcomes: dict[int, _FileOutcome],
        session_id: str | None,
        started: float,
        total_files: int,
    ) -> ParseOutcome:
        ordered = [outcomes[index] for index in sorted(outcomes)]
        row_errors = [error for outcome in ordered for error in outcome.row_errors]
        methods = [outcome.method for outcome in ordered if outcome.method is not None and outcome.parts]
        providers = [outcome.provider_used for outcome in ordered if outcome.provider_used]
        confidences = [part.provenance.confidence for part in parts]

        stats = ParseStats(
            method=methods[0] if methods else None,
            provider_used=providers[0] if providers else None,
            total_rows=sum(outcome.total_rows for outcome in ordered),
            parsed=len(parts),
            skipped=sum(outcome.skipped for outcome in ordered),
            failed=len(row_errors),
            flagged_for_review=sum(outcome.flagged for outcome in ordered) if parts else 0,
            average_confidence=round(sum(confidences) / len(confidences), 4) if confidences else 0.0,
            processing_time_ms=round((time.monotonic() - started) * 1000, 2),
            cache_hit=any(outcome.cache_hit for outcome in ordered),
            degraded=any(outcome.degraded for outcome in ordered),
        )
        self._perf["files"] += total_files
        self._perf["failed_files"] += sum(1 for outcome in ordered if outcome.failed)
        self._perf["degraded_files"] += sum(1 for outcome in ordered if outcome.degraded)
        self._provider_usage.update(providers)
        return ParseOutcome(parts=parts, stats=stats, row_errors=row_errors, session_id=session_id)

    def _record(self, outcome: ParseOutcome) -> None:
        self._perf["jobs"] += 1
        self._perf["parts"] += outcome.stats.parsed
        self._perf["flagged_parts"] += outcome.stats.flagged_for_review
        self._perf["total_processing_ms"] += outcome.stats.processing_time_ms

    # ------------------------------------------------------------------
    # Progress helpers
    # ------------------------------------------------------------------

    async def _advance(
        self,
        session_id: str | None,
        index: int,
        stage: FileStage,
        message: str,
        percent: float | None = None,
    ) -> None:
        if session_id is None:
            return
        try:
            await self._progress.update_file(session_id, index, stage=stage, percent=percent, message=message)
        except SessionNotFoundError:
            self._logger.debug("progress_session_gone", session_id=session_id)

    async def _fail(self, session_id: str | None, index: int, message: str) -> None:
        if session_id is None:
            return
        try:
            await self._progress.fail_file(session_id, index, message)
        except SessionNotFoundError:
            self._logger.debug("progress_session_gone", session_id=session_id)
