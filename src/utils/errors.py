"""Custom exception hierarchy for CutIntake.

All application exceptions inherit from :class:`CutIntakeError`, which
carries an optional ``provider_name`` so error handlers can identify which
extraction provider (e.g. "anthropic", "openai") caused the failure.

The hierarchy is organized by how the pipeline reacts to each failure:

    CutIntakeError  (base -- catch-all for any CutIntake error)
    +-- InputError               (malformed / unsupported input, no retry)
    +-- ProviderTransientError   (network, timeout, rate limit -> retry once)
    +-- ProviderRejectionError   (reachable but unusable content -> escalate)
    +-- ValidationWarning        (low confidence / missing optional field)
    +-- DegradedModeError        (AI chain exhausted -> deterministic fallback)
    +-- JobCancelledError        (cancellation observed at a checkpoint)
    +-- FatalJobError            (nothing could parse the input)
    +-- SessionNotFoundError     (unknown or reaped progress session)
    +-- ConfigurationError       (startup / invalid config)

Only :class:`FatalJobError` is meant to reach the caller of
``IntakePipeline.parse``; every other error is absorbed by the stage that
observes it and converted into an escalation, a fallback, or a flagged record.
"""


class CutIntakeError(Exception):
    """Base exception for all CutIntake errors.

    Every subclass carries a human-readable ``message`` and an optional
    ``provider_name`` identifying which external service triggered the
    error.  The ``__str__`` method prefixes the provider name in brackets
    for structured log output, e.g. ``[openai] Rate limit exceeded``.
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Input errors
# ---------------------------------------------------------------------------

class InputError(CutIntakeError):
    """Raised when an input file is malformed or of an unsupported kind."""

    def __init__(
        self,
        message: str = "Malformed or unsupported input",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------

class ProviderTransientError(CutIntakeError):
    """Raised for network failures, timeouts and rate limits.

    The orchestrator retries these exactly once before escalating to the
    next provider in the chain.
    """

    def __init__(
        self,
        message: str = "Provider call failed transiently",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ProviderRejectionError(CutIntakeError):
    """Raised when a provider answered but the content is unusable.

    Refusals, 4xx responses and bodies with no recoverable parts all land
    here.  The orchestrator escalates immediately without retrying.
    """

    def __init__(
        self,
        message: str = "Provider returned unusable content",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ValidationWarning(CutIntakeError):
    """A non-blocking problem with a single part record.

    Never raised out of a stage.  Instances are collected and their
    messages are attached to ``PartDraft.warnings``.
    """

    def __init__(
        self,
        message: str = "Part needs review",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Orchestration errors
# ---------------------------------------------------------------------------

class DegradedModeError(CutIntakeError):
    """Raised when the AI provider chain is exhausted or over its time budget.

    Callers catch this and fall back to the deterministic parser.
    """

    def __init__(
        self,
        message: str = "AI extraction unavailable, degraded mode",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class JobCancelledError(CutIntakeError):
    """Raised at a checkpoint once cancellation has been requested."""

    def __init__(
        self,
        message: str = "Job cancelled",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class FatalJobError(CutIntakeError):
    """Raised when every provider and the deterministic fallback failed."""

    def __init__(
        self,
        message: str = "No parser could extract parts from the input",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class SessionNotFoundError(CutIntakeError):
    """Raised when polling a progress session that is unknown or reaped."""

    def __init__(
        self,
        message: str = "Session not found or expired",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ConfigurationError(CutIntakeError):
    """Raised when configuration is invalid or missing at startup."""

    def __init__(
        self,
        message: str = "Invalid or missing configuration",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
