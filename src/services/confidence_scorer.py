"""Per-part confidence scoring and the human review gate.

Parsers attach per-field confidence signals to every part
(``provenance.field_confidence``).  The scorer folds them into one number
per part and compares it with the threshold for the caller's review
strictness.  Parts below the threshold are kept but flagged: they carry a
:class:`ValidationWarning` message and stay ``human_verified=False``.
Nothing is dropped here; structurally invalid rows never become parts in
the first place.
"""

from __future__ import annotations

from collections import Counter
from typing import Any

import structlog

from src.models.parts import ConfidenceLevel, PartDraft
from src.utils.confidence import calculate_confidence, confidence_threshold, confidence_to_tier
from src.utils.errors import ValidationWarning
from src.utils.logging import get_logger

# Relative importance of each field signal.  The dimensions decide whether
# a part can be cut at all; the label is cosmetic.
FIELD_WEIGHTS: dict[str, float] = {
    "length": 3.0,
    "width": 3.0,
    "quantity": 1.5,
    "thickness": 1.0,
    "material": 1.0,
    "label": 0.5,
}

# Weight of the batch-level "structure" signal (header quality, row
# consistency), present on tabular parts only.
STRUCTURE_WEIGHT = 3.0


class ConfidenceScorer:
    """Scores parts and flags the ones that need review."""

    def __init__(self, weights: dict[str, float] | None = None) -> None:
        self._weights = weights or FIELD_WEIGHTS
        self._logger: structlog.BoundLogger = get_logger(__name__)

    def score_part(self, part: PartDraft) -> float:
        """Weighted combination of the part's field confidences.

        Fields without a signal fall back to ``provenance.confidence``.  A
        ``structure`` signal, when present, is added as one more term.
        """
        fallback = part.provenance.confidence
        signals = part.provenance.field_confidence
        scores = [signals.get(field, fallback) for field in self._weights]
        weights = list(self._weights.values())
        if "structure" in signals:
            scores.append(signals["structure"])
            weights.append(STRUCTURE_WEIGHT)
        return round(calculate_confidence(scores, weights), 4)

    def review(
        self,
        parts: list[PartDraft],
        level: ConfidenceLevel | str = ConfidenceLevel.BALANCED,
    ) -> tuple[list[PartDraft], int]:
        """Score every part and flag the ones under the level's threshold.

        Parameters
        ----------
        parts:
            Parts to review.
        level:
            ``strict``, ``balanced`` or ``permissive``.

        Returns
        -------
        tuple[list[PartDraft], int]
            All parts (scored, flagged ones annotated) and the flagged count.
        """
        threshold = confidence_threshold(level)
        reviewed: list[PartDraft] = []
        flagged = 0

        for part in parts:
            score = self.score_part(part)
            provenance_update: dict[str, Any] = {"confidence": score}
            warnings = list(part.warnings)
            if score < threshold:
                flagged += 1
                provenance_update["human_verified"] = False
                warning = ValidationWarning(
                    f"Low confidence ({score:.2f} < {threshold:.2f}), needs review",
                    provider_name=part.provenance.provider_name,
                )
                warnings.append(warning.message)
            reviewed.append(
                part.model_copy(
                    update={
                        "provenance": part.provenance.model_copy(update=provenance_update),
                        "warnings": warnings,
                    }
                )
            )

        self._logger.info(
            "confidence_review",
            level=level.value if isinstance(level, ConfidenceLevel) else level,
            threshold=threshold,
            parts=len(parts),
            flagged=flagged,
        )
        return reviewed, flagged

    def summarize(self, parts: list[PartDraft]) -> dict[str, Any]:
        """Average confidence plus tier counts and per-level pass counts."""
        if not parts:
            return {
                "count": 0,
                "average_confidence": 0.0,
                "tiers": {},
                "passing": {level.value: 0 for level in ConfidenceLevel},
            }
        scores = [part.provenance.confidence for part in parts]
        return {
            "count": len(parts),
            "average_confidence": round(sum(scores) / len(scores), 4),
            "tiers": dict(Counter(confidence_to_tier(score).value for score in scores)),
            "passing": {
                level.value: sum(1 for score in scores if score >= confidence_threshold(level))
                for level in ConfidenceLevel
            },
        }
