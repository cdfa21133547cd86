"""Unit tests for the ResilientOrchestrator provider chain."""

from __future__ import annotations

import asyncio

import pytest

from src.models.inputs import InputKind, NormalizedInput
from src.models.parts import ParseOptions
from src.models.provider import FailureKind
from src.pipeline.orchestrator import ResilientOrchestrator
from src.pipeline.progress_store import ProgressSessionStore
from src.providers.cache.result_cache import ResultCache
from src.utils.cancellation import CancellationToken
from src.utils.errors import DegradedModeError, JobCancelledError


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _orchestrator(providers, **kwargs) -> tuple[ResilientOrchestrator, _SleepRecorder]:
    sleep = _SleepRecorder()
    kwargs.setdefault("retry_backoff_seconds", 0.5)
    return ResilientOrchestrator(providers, sleep=sleep, **kwargs), sleep


# ======================================================================
# Chain order and escalation
# ======================================================================


class TestProviderChain:
    @pytest.mark.asyncio
    async def test_first_success_wins(self, fake_provider, make_result, options: ParseOptions) -> None:
        first = fake_provider("a", [make_result("a", parts=2)])
        second = fake_provider("b", [make_result("b")])
        orchestrator, _ = _orchestrator([first, second])

        result = await orchestrator.run("text", "Side 720x560", options)

        assert result.provider_name == "a"
        assert len(result.parts) == 2
        assert second.calls == []

    @pytest.mark.asyncio
    async def test_unconfigured_provider_never_called(self, fake_provider, make_result, options) -> None:
        unconfigured = fake_provider("a", [make_result("a")], configured=False)
        fallback = fake_provider("b", [make_result("b")])
        orchestrator, _ = _orchestrator([unconfigured, fallback])

        result = await orchestrator.run("text", "list", options)

        assert unconfigured.calls == []
        assert result.provider_name == "b"
        assert orchestrator.configured_providers() == ["b"]

    @pytest.mark.asyncio
    async def test_provider_without_vision_skipped_for_images(self, fake_provider, make_result, options) -> None:
        text_only = fake_provider("a", [make_result("a")], documents=False)
        vision = fake_provider("b", [make_result("b")])
        orchestrator, _ = _orchestrator([text_only, vision])

        result = await orchestrator.run("image", b"\x89PNG", options)

        assert text_only.calls == []
        assert vision.calls == [("image", b"\x89PNG")]
        assert result.provider_name == "b"

    @pytest.mark.asyncio
    async def test_rejection_escalates_without_retry(self, fake_provider, make_result, options) -> None:
        first = fake_provider("a", [make_result("a", failure=FailureKind.REJECTION)])
        second = fake_provider("b", [make_result("b")])
        orchestrator, sleep = _orchestrator([first, second])

        result = await orchestrator.run("text", "list", options)

        assert len(first.calls) == 1
        assert sleep.delays == []
        assert result.provider_name == "b"

    @pytest.mark.asyncio
    async def test_empty_success_escalates(self, fake_provider, make_result, options) -> None:
        first = fake_provider("a", [make_result("a", parts=0)])
        second = fake_provider("b", [make_result("b")])
        orchestrator, _ = _orchestrator([first, second])

        result = await orchestrator.run("text", "list", options)

        assert result.provider_name == "b"

    @pytest.mark.asyncio
    async def test_all_providers_fail(self, fake_provider, make_result, options) -> None:
        first = fake_provider("a", [make_result("a", failure=FailureKind.REJECTION, error="refused")])
        second = fake_provider("b", [make_result("b", failure=FailureKind.REJECTION, error="no parts")])
        orchestrator, _ = _orchestrator([first, second])

        with pytest.raises(DegradedModeError, match="a: refused; b: no parts"):
            await orchestrator.run("text", "list", options)

    @pytest.mark.asyncio
    async def test_no_configured_provider(self, fake_provider, make_result, options) -> None:
        orchestrator, _ = _orchestrator([fake_provider("a", [make_result()], configured=False)])
        with pytest.raises(DegradedModeError, match="No extraction provider is configured"):
            await orchestrator.run("text", "list", options)

    @pytest.mark.asyncio
    async def test_unknown_operation(self, options) -> None:
        orchestrator, _ = _orchestrator([])
        with pytest.raises(ValueError, match="Unknown extraction operation"):
            await orchestrator.run("audio", "x", options)

    @pytest.mark.asyncio
    async def test_escalation_reported_to_progress(self, fake_provider, make_result, options) -> None:
        progress = ProgressSessionStore()
        session = await progress.create_session([("photo.png", 10)])
        first = fake_provider("anthropic", [make_result("anthropic", failure=FailureKind.REJECTION, error="refusal")])
        second = fake_provider("openai", [make_result("openai")])
        orchestrator, _ = _orchestrator([first, second], progress=progress)

        await orchestrator.run("image", b"img", options, session_id=session.id, file_index=0)

        files = await progress.progress(session.id)
        assert files[0].message == "Falling back to openai (anthropic: refusal)"


# ======================================================================
# Retry, timeout and budget
# ======================================================================


class TestRetryAndBudget:
    @pytest.mark.asyncio
    async def test_transient_failure_retried_once(self, fake_provider, make_result, options) -> None:
        flaky = fake_provider("a", [make_result("a", failure=FailureKind.TRANSIENT), make_result("a")])
        orchestrator, sleep = _orchestrator([flaky])

        result = await orchestrator.run("text", "list", options)

        assert result.success is True
        assert len(flaky.calls) == 2
        assert sleep.delays == [0.5]

    @pytest.mark.asyncio
    async def test_second_transient_failure_escalates(self, fake_provider, make_result, options) -> None:
        down = fake_provider("a", [make_result("a", failure=FailureKind.TRANSIENT)])
        backup = fake_provider("b", [make_result("b")])
        orchestrator, sleep = _orchestrator([down, backup])

        result = await orchestrator.run("text", "list", options)

        assert len(down.calls) == 2
        assert len(backup.calls) == 1
        assert sleep.delays == [0.5]
        assert result.provider_name == "b"

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, fake_provider, make_result, options) -> None:
        slow = fake_provider("a", [make_result("a")], delay=0.5)
        backup = fake_provider("b", [make_result("b")])
        orchestrator, _ = _orchestrator([slow, backup], timeout_seconds=0.01)

        result = await orchestrator.run("text", "list", options)

        assert len(slow.calls) == 2
        assert result.provider_name == "b"

    @pytest.mark.asyncio
    async def test_budget_exhausted_between_providers(self, fake_provider, make_result, options) -> None:
        clock = _FakeClock()

        async def slow_rejection():
            clock.now += 20
            return make_result("a", failure=FailureKind.REJECTION)

        first = fake_provider("a", [slow_rejection])
        second = fake_provider("b", [make_result("b")])
        orchestrator, _ = _orchestrator([first, second], job_time_budget_seconds=10, clock=clock)

        with pytest.raises(DegradedModeError, match="Job time budget of 10s exceeded"):
            await orchestrator.run("text", "list", options)
        assert second.calls == []

    @pytest.mark.asyncio
    async def test_retry_skipped_when_backoff_exceeds_budget(self, fake_provider, make_result, options) -> None:
        clock = _FakeClock()

        async def slow_transient():
            clock.now += 9.8
            return make_result("a", failure=FailureKind.TRANSIENT)

        flaky = fake_provider("a", [slow_transient])
        orchestrator, sleep = _orchestrator([flaky], job_time_budget_seconds=10, clock=clock)

        with pytest.raises(DegradedModeError, match="budget"):
            await orchestrator.run("text", "list", options)
        assert len(flaky.calls) == 1
        assert sleep.delays == []


# ======================================================================
# Cancellation and payload dispatch
# ======================================================================


class TestCancellationAndDispatch:
    @pytest.mark.asyncio
    async def test_cancelled_before_call(self, fake_provider, make_result, options) -> None:
        provider = fake_provider("a", [make_result("a")])
        token = CancellationToken("s1")
        token.cancel("user pressed stop")
        orchestrator, _ = _orchestrator([provider])

        with pytest.raises(JobCancelledError, match="user pressed stop"):
            await orchestrator.run("text", "list", options, token=token)
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_result_discarded_when_cancelled_mid_call(self, fake_provider, make_result, options) -> None:
        token = CancellationToken("s1")

        async def cancel_then_answer():
            token.cancel()
            await asyncio.sleep(0)
            return make_result("a")

        provider = fake_provider("a", [cancel_then_answer])
        orchestrator, _ = _orchestrator([provider])

        with pytest.raises(JobCancelledError):
            await orchestrator.run("text", "list", options, token=token)
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_document_payload(self, fake_provider, make_result, options) -> None:
        provider = fake_provider("a", [make_result("a")])
        orchestrator, _ = _orchestrator([provider])
        document = NormalizedInput(
            kind=InputKind.PDF,
            name="list.pdf",
            lines=["Side 720x560"],
            payload=b"%PDF-1.7",
        )

        await orchestrator.run("document", document, options)

        assert provider.calls == [("document", "Side 720x560")]

    @pytest.mark.asyncio
    async def test_run_cached_calls_provider_once(self, fake_provider, make_result, options) -> None:
        provider = fake_provider("a", [make_result("a", confidence=0.9)])
        orchestrator, _ = _orchestrator([provider], cache=ResultCache())

        first, first_hit = await orchestrator.run_cached("fp", "text", "list", options)
        second, second_hit = await orchestrator.run_cached("fp", "text", "list", options)

        assert (first_hit, second_hit) == (False, True)
        assert second == first
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_run_cached_without_cache(self, fake_provider, make_result, options) -> None:
        provider = fake_provider("a", [make_result("a")])
        orchestrator, _ = _orchestrator([provider])

        _, hit = await orchestrator.run_cached("fp", "text", "list", options)
        await orchestrator.run_cached("fp", "text", "list", options)

        assert hit is False
        assert len(provider.calls) == 2
