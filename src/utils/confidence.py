"""Confidence scoring math shared by the parsers and the review step.

Every part record carries a confidence in [0.0, 1.0].  The numbers come
from very different places (column-mapping quality, regex hits on a free
text line, a model's self-reported score) so this module keeps the small
amount of arithmetic they share in one place:

1. **calculate_confidence** -- weighted average of several field signals.
2. **confidence_to_tier** -- maps a score onto a display tier.
3. **merge_confidence** -- blends an existing score with new evidence.
4. **confidence_threshold** -- the review cut-off for a caller-selected
   strictness level (strict / balanced / permissive).
"""

from enum import Enum


class ConfidenceTier(Enum):
    """Human-readable confidence tiers used in stats and API responses."""

    VERY_LOW = "very_low"    # < 0.2
    LOW = "low"              # 0.2 - 0.5
    MEDIUM = "medium"        # 0.5 - 0.75
    HIGH = "high"            # 0.75 - 0.9
    VERY_HIGH = "very_high"  # >= 0.9


# Review thresholds keyed by confidence level value.
CONFIDENCE_THRESHOLDS: dict[str, float] = {
    "strict": 0.9,
    "balanced": 0.75,
    "permissive": 0.5,
}


def confidence_threshold(level: str | Enum) -> float:
    """Return the review threshold for a confidence level.

    Args:
        level: ``"strict"``, ``"balanced"`` or ``"permissive"`` (or the
               matching enum member).

    Returns:
        The minimum confidence a part needs to skip human review.

    Raises:
        ValueError: If the level is not recognised.
    """
    key = level.value if isinstance(level, Enum) else str(level)
    try:
        return CONFIDENCE_THRESHOLDS[key.lower()]
    except KeyError:
        raise ValueError(f"Unknown confidence level: {level!r}") from None


def calculate_confidence(
    scores: list[float],
    weights: list[float] | None = None,
) -> float:
    """Compute a weighted average confidence score.

    Args:
        scores: Individual confidence scores, each in [0.0, 1.0].
        weights: Optional weights for each score. Defaults to equal weighting.

    Returns:
        Weighted average clamped to [0.0, 1.0].

    Raises:
        ValueError: If scores is empty or lengths of scores and weights differ.
    """
    if not scores:
        raise ValueError("scores must not be empty")

    if weights is None:
        weights = [1.0] * len(scores)

    if len(scores) != len(weights):
        raise ValueError("scores and weights must have the same length")

    total_weight = sum(weights)
    if total_weight == 0:
        return 0.0

    weighted_sum = sum(s * w for s, w in zip(scores, weights, strict=True))
    return max(0.0, min(1.0, weighted_sum / total_weight))


def confidence_to_tier(score: float) -> ConfidenceTier:
    """Map a numeric confidence score to a display tier.

    The tier edges line up with the review thresholds, so a part in the
    HIGH tier passes ``balanced`` review and a VERY_HIGH part passes
    ``strict``.
    """
    if score < 0.2:
        return ConfidenceTier.VERY_LOW
    if score < 0.5:
        return ConfidenceTier.LOW
    if score < 0.75:
        return ConfidenceTier.MEDIUM
    if score < 0.9:
        return ConfidenceTier.HIGH
    return ConfidenceTier.VERY_HIGH


def merge_confidence(existing: float, new: float, new_weight: float = 0.5) -> float:
    """Blend an existing confidence score with new evidence.

    Args:
        existing: Current confidence score in [0.0, 1.0].
        new: New evidence confidence score in [0.0, 1.0].
        new_weight: Weight given to the new evidence (0.0--1.0). Defaults to 0.5.

    Returns:
        Updated confidence score clamped to [0.0, 1.0].
    """
    new_weight = max(0.0, min(1.0, new_weight))
    merged = existing * (1.0 - new_weight) + new * new_weight
    return max(0.0, min(1.0, merged))
