"""Resilient provider chain for AI part extraction.

Calls the configured extraction providers in priority order (Anthropic,
then OpenAI by default) until one returns parts.

ARCHITECTURE NOTE:
    A plain "try the next one" chain, plus three rules for paid,
    rate-limited APIs:

        1. Every call is wrapped in ``asyncio.wait_for`` with the per-call
           timeout, so a hung connection can never stall a job.
        2. Transient failures (network, rate limit, timeout) are retried
           exactly once with linear backoff before escalating.  Rejections
           (the provider answered but the content is unusable) escalate
           immediately.
        3. The whole chain runs inside a job time budget.  Running out of
           budget, or out of providers, raises :class:`DegradedModeError`
           and the caller falls back to the deterministic parser.

    Calls are strictly sequential; two providers are never raced.

    Cancellation is cooperative: the token is checked before each call.
    A call that was already dispatched finishes, but its result is
    discarded and :class:`JobCancelledError` is raised.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

from src.interfaces.cache_provider import IResultCache
from src.interfaces.extraction_provider import IExtractionProvider
from src.models.inputs import NormalizedInput
from src.models.parts import ParseOptions
from src.models.provider import FailureKind, ProviderResult
from src.pipeline.progress_store import ProgressSessionStore
from src.utils.cancellation import CancellationToken, never_cancelled
from src.utils.errors import DegradedModeError, JobCancelledError, SessionNotFoundError
from src.utils.logging import get_logger

OPERATIONS = ("text", "image", "document")

MAX_ATTEMPTS_PER_PROVIDER = 2

Payload = str | bytes | NormalizedInput


class ResilientOrchestrator:
    """Ordered extraction provider chain with timeout, retry and budget.

    Parameters
    ----------
    providers:
        Extraction providers in priority order.
    progress:
        Optional progress store; escalations are reported to the file
        being processed.
    cache:
        Optional result cache used by :meth:`run_cached`.
    timeout_seconds:
        Per-call timeout.
    retry_backoff_seconds:
        Base delay before a retry; attempt *n* waits ``n`` times this.
    job_time_budget_seconds:
        Wall-clock budget for the whole chain.
    clock / sleep:
        Injectable for tests.
    """

    def __init__(
        self,
        providers: list[IExtractionProvider],
        progress: ProgressSessionStore | None = None,
        cache: IResultCache | None = None,
        timeout_seconds: float = 30.0,
        retry_backoff_seconds: float = 1.0,
        job_time_budget_seconds: float = 90.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._providers = providers
        self._progress = progress
        self._cache = cache
        self._timeout = timeout_seconds
        self._backoff = retry_backoff_seconds
        self._budget = job_time_budget_seconds
        self._clock = clock
        self._sleep = sleep
        self._logger: structlog.BoundLogger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        operation: str,
        payload: Payload,
        options: ParseOptions,
        session_id: str | None = None,
        file_index: int | None = None,
        token: CancellationToken | None = None,
    ) -> ProviderResult:
        """Run *operation* through the provider chain.

        Parameters
        ----------
        operation:
            ``text`` (payload is a str), ``image`` (payload is image
            bytes) or ``document`` (payload is a PDF ``NormalizedInput``).
        payload:
            What to send.
        options:
            Caller parse options.
        session_id / file_index:
            Progress entry that receives escalation messages.
        token:
            Cancellation token checked before every call.

        Returns
        -------
        ProviderResult
            The first successful result that contains parts.

        Raises
        ------
        DegradedModeError
            If every provider failed or the job time budget ran out.
        JobCancelledError
            If cancellation was observed at a checkpoint.
        """
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown extraction operation: {operation!r}")
        token = token or never_cancelled()
        deadline = self._clock() + self._budget
        reasons: list[str] = []

        candidates = [p for p in self._providers if self._usable(p, operation)]
        for position, provider in enumerate(candidates):
            name = provider.get_provider_name()
            result = await self._run_provider(provider, operation, payload, options, deadline, token)
            if result.success and result.parts:
                self._logger.info(
                    "extraction_provider_accepted",
                    provider=name,
                    parts=len(result.parts),
                    confidence=round(result.total_confidence, 4),
                    truncated=result.truncated,
                )
                return result

            reason = result.errors[0] if result.errors else "no parts returned"
            reasons.append(f"{name}: {reason}")
            if position + 1 < len(candidates):
                next_name = candidates[position + 1].get_provider_name()
                self._logger.warning(
                    "orchestrator_escalating",
                    provider=name,
                    next_provider=next_name,
                    failure_kind=result.failure_kind.value,
                    reason=reason,
                )
                await self._report(session_id, file_index, f"Falling back to {next_name} ({name}: {reason})")

        if not candidates:
            raise DegradedModeError("No extraction provider is configured")
        raise DegradedModeError("All extraction providers failed: " + "; ".join(reasons))

    async def run_cached(
        self,
        fingerprint: str,
        operation: str,
        payload: Payload,
        options: ParseOptions,
        session_id: str | None = None,
        file_index: int | None = None,
        token: CancellationToken | None = None,
    ) -> tuple[ProviderResult, bool]:
        """Like :meth:`run`, memoized through the result cache.

        Returns
        -------
        tuple[ProviderResult, bool]
            The result and whether it came from the cache.
        """
        if self._cache is None:
            return await self.run(operation, payload, options, session_id, file_index, token), False

        async def _compute() -> ProviderResult:
            return await self.run(operation, payload, options, session_id, file_index, token)

        return await self._cache.get_or_compute(fingerprint, _compute)

    def configured_providers(self) -> list[str]:
        """Names of the providers that would actually be called."""
        return [p.get_provider_name() for p in self._providers if p.is_configured()]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _usable(self, provider: IExtractionProvider, operation: str) -> bool:
        name = provider.get_provider_name()
        if not provider.is_configured():
            self._logger.info("extraction_provider_unconfigured", provider=name)
            return False
        if operation != "text" and not provider.supports_documents():
            self._logger.info("extraction_provider_no_vision", provider=name, operation=operation)
            return False
        return True

    async def _run_provider(
        self,
        provider: IExtractionProvider,
        operation: str,
        payload: Payload,
        options: ParseOptions,
        deadline: float,
        token: CancellationToken,
    ) -> ProviderResult:
        """Call one provider, retrying a transient failure once."""
        name = provider.get_provider_name()
        result = ProviderResult.failed(name, "not attempted", FailureKind.TRANSIENT)

        for attempt in range(1, MAX_ATTEMPTS_PER_PROVIDER + 1):
            remaining = self._remaining(deadline)
            token.raise_if_cancelled(f"before {name} call")

            self._logger.info("extraction_provider_attempting", provider=name, operation=operation, attempt=attempt)
            started = self._clock()
            try:
                result = await asyncio.wait_for(
                    self._dispatch(provider, operation, payload, options),
                    timeout=min(self._timeout, remaining),
                )
            except asyncio.TimeoutError:
                result = ProviderResult.failed(
                    name,
                    f"Timed out after {min(self._timeout, remaining):.1f}s",
                    FailureKind.TRANSIENT,
                    (self._clock() - started) * 1000,
                )

            if token.cancelled:
                self._logger.info("extraction_result_discarded", provider=name, reason=token.reason)
                raise JobCancelledError(f"{token.reason} during {name} call")

            if result.success or result.failure_kind != FailureKind.TRANSIENT:
                return result
            if attempt < MAX_ATTEMPTS_PER_PROVIDER:
                delay = self._backoff * attempt
                self._logger.warning(
                    "extraction_provider_retrying",
                    provider=name,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=result.errors[0] if result.errors else "",
                )
                if self._clock() + delay >= deadline:
                    self._over_budget()
                await self._sleep(delay)
        return result

    async def _dispatch(
        self,
        provider: IExtractionProvider,
        operation: str,
        payload: Payload,
        options: ParseOptions,
    ) -> ProviderResult:
        if operation == "text":
            return await provider.parse_text(str(payload), options)
        if operation == "image":
            return await provider.parse_image(payload, options)  # type: ignore[arg-type]
        document: NormalizedInput = payload  # type: ignore[assignment]
        return await provider.parse_document(
            document.payload or b"",
            document.text if document.has_text else None,
            options,
            page_images=document.page_images or None,
        )

    def _remaining(self, deadline: float) -> float:
        remaining = deadline - self._clock()
        if remaining <= 0:
            self._over_budget()
        return remaining

    def _over_budget(self) -> None:
        self._logger.warning("orchestrator_budget_exceeded", budget_seconds=self._budget)
        raise DegradedModeError(f"Job time budget of {self._budget:g}s exceeded")

    async def _report(self, session_id: str | None, file_index: int | None, message: str) -> None:
        if self._progress is None or session_id is None or file_index is None:
            return
        try:
            await self._progress.update_file(session_id, file_index, message=message)
        except SessionNotFoundError:
            self._logger.debug("progress_session_gone", session_id=session_id)
