"""Utility modules for CutIntake.

Available utility modules (re-exported here for convenience):

- **cancellation** -- Cooperative CancellationToken checked at stage
  checkpoints.
- **concurrency** -- Bounded fan-out helpers for bulk record updates.
- **confidence** -- Weighted scoring math, review thresholds and display
  tiers.
- **errors** -- Exception hierarchy rooted at CutIntakeError, organized by
  how the pipeline reacts to each failure.
- **json_recovery** -- Repair and extraction of truncated or chatty model
  output.
- **logging** -- structlog setup with a dual-renderer pattern: coloured
  console output in development, structured JSON in production.
- **text_normalizer** -- Number parsing, unit conversion and dimension
  sanity checks shared by the parsers.
- **cutlist_codes** (not re-exported here) -- Edge-banding and grain
  shortcode expansion.
"""

# -- Cooperative cancellation -----------------------------------------------
from src.utils.cancellation import CancellationToken, never_cancelled

# -- Async concurrency helpers ---------------------------------------------
from src.utils.concurrency import bulk_apply, throttled_gather

# -- Confidence scoring utilities ------------------------------------------
from src.utils.confidence import (
    ConfidenceTier,
    calculate_confidence,
    confidence_threshold,
    confidence_to_tier,
    merge_confidence,
)

# -- Domain exception hierarchy --------------------------------------------
from src.utils.errors import (
    ConfigurationError,
    CutIntakeError,
    DegradedModeError,
    FatalJobError,
    InputError,
    JobCancelledError,
    ProviderRejectionError,
    ProviderTransientError,
    SessionNotFoundError,
    ValidationWarning,
)

# -- JSON recovery ---------------------------------------------------------
from src.utils.json_recovery import recover_json

# -- Structured logging setup ----------------------------------------------
from src.utils.logging import bind_job_context, configure_logging, get_logger

# -- Number and unit normalization -----------------------------------------
from src.utils.text_normalizer import normalize_text, parse_number, to_mm

__all__ = [
    "CancellationToken",
    "ConfidenceTier",
    "ConfigurationError",
    "CutIntakeError",
    "DegradedModeError",
    "FatalJobError",
    "InputError",
    "JobCancelledError",
    "ProviderRejectionError",
    "ProviderTransientError",
    "SessionNotFoundError",
    "ValidationWarning",
    "bind_job_context",
    "bulk_apply",
    "calculate_confidence",
    "confidence_threshold",
    "confidence_to_tier",
    "configure_logging",
    "get_logger",
    "merge_confidence",
    "never_cancelled",
    "normalize_text",
    "parse_number",
    "recover_json",
    "throttled_gather",
    "to_mm",
]
