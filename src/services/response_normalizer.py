"""Gateway boundary: provider responses to canonical ProviderResult.

Each extraction provider hands back its family-tagged response
(:class:`AnthropicResponse` or :class:`OpenAIResponse`).  This module is
the single place those are turned into a :class:`ProviderResult`:

1. recover JSON from the response text (fences, prose, truncation)
2. map part-shaped dicts to :class:`PartDraft`, accepting long and short
   keys (``length``/``l``, ``quantity``/``qty``/``q`` ...)
3. validate each part (dimensions > 0 and <= 5000 mm, quantity 1..1000)
4. flag truncation (``max_tokens`` / ``length`` stop reasons)

Parts that fail validation are reported in ``errors`` and left out;
a response with no valid part at all is a rejection.
"""

from __future__ import annotations

import math
from typing import Any

from pydantic import ValidationError
from rapidfuzz import fuzz, process

from src.models.parts import (
    EdgeBanding,
    GrainPolicy,
    ParseOptions,
    PartDraft,
    Provenance,
    SourceMethod,
)
from src.models.provider import FailureKind, ProviderResponse, ProviderResult
from src.utils.cutlist_codes import expand_edge_code, parse_grain
from src.utils.json_recovery import extract_parts_payload, recover_json
from src.utils.text_normalizer import MAX_REASONABLE_MM, parse_number

MAX_AI_DIMENSION_MM = MAX_REASONABLE_MM
MAX_AI_QUANTITY = 1000
DEFAULT_AI_CONFIDENCE = 0.8
MATERIAL_MATCH_CUTOFF = 85.0
TRUNCATION_WARNING = "Response was truncated, later parts may be missing"

_NUMERIC_KEYS = ("length", "width", "thickness", "quantity")

_KEY_ALIASES: dict[str, tuple[str, ...]] = {
    "length": ("length", "l", "len", "length_mm"),
    "width": ("width", "w", "wid", "width_mm"),
    "thickness": ("thickness", "t", "thk", "thickness_mm"),
    "quantity": ("quantity", "qty", "q", "count"),
    "material": ("material", "mat", "material_ref", "materialRef"),
    "label": ("label", "name", "part", "description"),
    "grain": ("grain", "grain_policy", "grainPolicy"),
    "allow_rotation": ("allowRotation", "allow_rotation", "rotate"),
    "edge_banding": ("edgeBanding", "edge_banding", "edges", "eb"),
    "grooving": ("grooving", "grooves"),
    "drilling": ("drilling",),
    "cnc_ops": ("cncOperations", "cnc_ops", "cncOps", "cnc"),
    "notes": ("notes", "note", "comment"),
    "confidence": ("confidence", "conf"),
    "field_confidence": ("fieldConfidence", "field_confidence"),
    "row": ("row",),
}


def map_material(
    value: str | None,
    aliases: dict[str, list[str]] | None,
    default: str,
) -> str:
    """Map a model-reported material name onto a catalogue id.

    An alias matches when every one of its words appears in the name
    (case-insensitive); the longest matching alias wins.  Otherwise the
    name, minus thickness tokens such as ``18mm``, is fuzzy-matched against
    every alias and accepted at ``MATERIAL_MATCH_CUTOFF`` or above.  Names
    that match nothing are kept as reported.
    """
    if not value or not str(value).strip():
        return default
    name = str(value).strip()
    if not aliases:
        return name
    if name in aliases:
        return name

    words = name.lower().replace("-", " ").split()
    best: tuple[int, str] | None = None
    for material_id, phrases in aliases.items():
        for phrase in phrases:
            tokens = phrase.lower().split()
            if tokens and all(token in words for token in tokens):
                if best is None or len(tokens) > best[0]:
                    best = (len(tokens), material_id)
    if best is not None:
        return best[1]

    query = " ".join(word for word in words if not any(char.isdigit() for char in word))
    if not query:
        return name
    choices = [(phrase.lower(), material_id) for material_id, phrases in aliases.items() for phrase in phrases]
    match = process.extractOne(
        query,
        [phrase for phrase, _ in choices],
        scorer=fuzz.token_sort_ratio,
        score_cutoff=MATERIAL_MATCH_CUTOFF,
    )
    if match is None:
        return name
    return choices[match[2]][1]


def normalize_provider_response(
    response: ProviderResponse,
    provider_name: str,
    options: ParseOptions,
    processing_time_ms: float = 0.0,
    material_aliases: dict[str, list[str]] | None = None,
) -> ProviderResult:
    """Turn a family-tagged provider response into a :class:`ProviderResult`.

    Parameters
    ----------
    response:
        The provider's :class:`AnthropicResponse` / :class:`OpenAIResponse`.
    provider_name:
        Recorded on the result and on every part's provenance.
    options:
        Caller options supplying the material and thickness defaults.
    processing_time_ms:
        Wall time of the provider call.
    material_aliases:
        Catalogue id -> alias phrases, from ``config.yaml``.

    Returns
    -------
    ProviderResult
        ``success=True`` with at least one part, or a REJECTION failure.
    """
    text = response.text
    truncated = response.truncated

    if not text.strip():
        return ProviderResult.failed(
            provider_name, "Empty response", FailureKind.REJECTION, processing_time_ms
        )

    recovered = recover_json(text)
    items = extract_parts_payload(recovered) if recovered is not None else None
    if items is None:
        return ProviderResult.failed(
            provider_name,
            "Could not recover a part list from the response",
            FailureKind.REJECTION,
            processing_time_ms,
            raw_response_text=text,
        ).model_copy(update={"truncated": truncated})

    parts: list[PartDraft] = []
    errors: list[str] = []
    for index, item in enumerate(items, start=1):
        outcome = part_from_dict(item, index, provider_name, options, material_aliases)
        if isinstance(outcome, str):
            errors.append(outcome)
        else:
            parts.append(outcome)

    if truncated and parts:
        last = parts[-1]
        parts[-1] = last.model_copy(update={"warnings": [*last.warnings, TRUNCATION_WARNING]})
        errors.append(TRUNCATION_WARNING)

    if not parts:
        return ProviderResult(
            success=False,
            errors=errors or ["Response contained no parts"],
            provider_name=provider_name,
            failure_kind=FailureKind.REJECTION,
            processing_time_ms=processing_time_ms,
            raw_response_text=text,
            truncated=truncated,
        )

    total_confidence = sum(p.provenance.confidence for p in parts) / len(parts)
    return ProviderResult(
        parts=parts,
        raw_response_text=text,
        success=True,
        errors=errors,
        processing_time_ms=processing_time_ms,
        provider_name=provider_name,
        total_confidence=round(total_confidence, 4),
        truncated=truncated,
    )


def part_from_dict(
    item: dict[str, Any],
    index: int,
    provider_name: str,
    options: ParseOptions,
    material_aliases: dict[str, list[str]] | None = None,
) -> PartDraft | str:
    """Build a validated part from one model-reported dict.

    Returns the part, or an error message naming the offending item.
    """
    if not isinstance(item, dict):
        return f"Part {index}: not an object"
    fields = _canonical_fields(item)
    row = fields.get("row", index)
    for key in _NUMERIC_KEYS:
        value = fields.get(key)
        if isinstance(value, float) and not math.isfinite(value):
            return f"Part {row}: {key} is not a finite number"
    length = parse_number(fields.get("length"))
    width = parse_number(fields.get("width"))

    if length is None or width is None or length <= 0 or width <= 0:
        return f"Part {row}: missing or non-positive dimensions"
    if length > MAX_AI_DIMENSION_MM or width > MAX_AI_DIMENSION_MM:
        return f"Part {row}: dimension exceeds {MAX_AI_DIMENSION_MM:g} mm"
    if width > length:
        length, width = width, length

    quantity_raw = parse_number(fields.get("quantity"))
    quantity = round(quantity_raw) if quantity_raw is not None else 1
    if not 1 <= quantity <= MAX_AI_QUANTITY:
        return f"Part {row}: quantity {quantity} outside 1-{MAX_AI_QUANTITY}"

    thickness = parse_number(fields.get("thickness"))
    if thickness is None or thickness <= 0:
        thickness = options.default_thickness_mm

    grain_policy, allow_rotation = GrainPolicy.NONE, True
    grain_value = fields.get("grain")
    if isinstance(grain_value, str):
        grain = parse_grain(grain_value)
        if grain is not None:
            grain_policy, allow_rotation = grain
    if isinstance(fields.get("allow_rotation"), bool) and grain_policy == GrainPolicy.NONE:
        allow_rotation = fields["allow_rotation"]

    warnings: list[str] = []
    if quantity_raw is None:
        warnings.append("Quantity not specified, defaulted to 1")

    confidence = _unit_interval(fields.get("confidence"), DEFAULT_AI_CONFIDENCE)
    signals = fields.get("field_confidence")
    field_confidence = {
        key: _unit_interval(value, confidence)
        for key, value in (signals.items() if isinstance(signals, dict) else ())
        if isinstance(key, str)
    }

    try:
        return PartDraft(
            label=_optional_text(fields.get("label")),
            quantity=quantity,
            length_mm=float(length),
            width_mm=float(width),
            thickness_mm=float(thickness),
            material_ref=map_material(fields.get("material"), material_aliases, options.default_material_id),
            grain_policy=grain_policy,
            allow_rotation=allow_rotation,
            edge_banding=_edge_banding(fields.get("edge_banding")),
            grooving=_operation(fields.get("grooving")),
            drilling=_operation(fields.get("drilling")),
            cnc_ops=_operation(fields.get("cnc_ops")),
            notes=_optional_text(fields.get("notes")),
            warnings=warnings,
            provenance=Provenance(
                method=SourceMethod.AI,
                source_ref=f"row:{row}",
                confidence=confidence,
                field_confidence=field_confidence,
                provider_name=provider_name,
            ),
        )
    except ValidationError as exc:
        return f"Part {row}: {exc.error_count()} invalid field(s)"


def _canonical_fields(item: dict[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for canonical, aliases in _KEY_ALIASES.items():
        for alias in aliases:
            if alias in item and item[alias] is not None:
                fields[canonical] = item[alias]
                break
    return fields


def _unit_interval(value: Any, default: float) -> float:
    number = parse_number(value) if not isinstance(value, (int, float)) else float(value)
    if number is None or not math.isfinite(number):
        return default
    if 1.0 < number <= 100.0:
        number = number / 100.0
    return max(0.0, min(1.0, number))


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _edge_banding(value: Any) -> EdgeBanding | None:
    if isinstance(value, str):
        banding = expand_edge_code(value)
    elif isinstance(value, list):
        banding = expand_edge_code("+".join(str(edge) for edge in value)) if value else None
    elif isinstance(value, dict):
        flags = {edge: bool(value.get(edge)) for edge in ("L1", "L2", "W1", "W2")}
        edges = value.get("edges")
        if isinstance(edges, list):
            for edge in edges:
                if str(edge).upper() in flags:
                    flags[str(edge).upper()] = True
        material = value.get("material") or value.get("edge_material")
        banding = EdgeBanding(**flags, edge_material=str(material) if material else None)
    else:
        return None
    if banding is None or not banding.applied_edges():
        return None
    return banding


def _operation(value: Any) -> dict[str, Any] | None:
    if not isinstance(value, dict):
        return None
    if value.get("detected") is False:
        return None
    return value or None
