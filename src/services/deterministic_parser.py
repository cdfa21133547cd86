"""Deterministic cut-list parser.

Turns a :class:`NormalizedInput` into part records without any network
call.  Spreadsheet-like inputs (CSV/TSV/pipe/semicolon text and Excel
sheets) go through column mapping; free text goes through the
:class:`TextLineParser`; dictation goes through the :class:`VoiceParser`.

Column mapping
--------------
Each field has a header regex and a weight.  Fields are claimed in
priority order (length, width, thickness, quantity, label, material,
grain, edge banding, notes); for each field the headers are scanned left
to right and the first unclaimed match wins.  The mapping confidence is::

    (sum of matched weights
     + 10 if both length and width are mapped
     + 10 if sample rows have a consistent cell count
     + 5  if fewer than 30% of header cells look numeric) / 115

Sheets without a recognisable header row are read positionally (see
:meth:`DeterministicParser._positional_fields`).  Rows that fit neither
scheme are retried as a free-text line before being reported as errors.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from src.models.inputs import InputKind, NormalizedInput
from src.models.parts import (
    DimOrderHint,
    GrainPolicy,
    ParseBatch,
    ParseOptions,
    PartDraft,
    Provenance,
    RowError,
    SourceMethod,
)
from src.services.input_normalizer import split_row
from src.services.text_parser import TextLineParser, is_skip_line
from src.services.voice_parser import VoiceParser
from src.utils.confidence import merge_confidence
from src.utils.cutlist_codes import expand_edge_code, parse_grain
from src.utils.errors import InputError
from src.utils.logging import get_logger
from src.utils.text_normalizer import is_reasonable_dimension, parse_number, to_mm


@dataclass(frozen=True)
class FieldPattern:
    """Header regex and scoring weight for one part field."""

    field: str
    pattern: re.Pattern[str]
    weight: int
    required: bool = False


FIELD_PATTERNS: tuple[FieldPattern, ...] = (
    FieldPattern(
        "length",
        re.compile(r"^(?:l|len|lg|long|height|h)\b|\blength\b|\blen\b", re.IGNORECASE),
        20,
        required=True,
    ),
    FieldPattern(
        "width",
        re.compile(r"^(?:w|wid|wide|depth|d)\b|\bwidth\b|\bbreadth\b", re.IGNORECASE),
        20,
        required=True,
    ),
    FieldPattern("thickness", re.compile(r"^(?:t|th|thk)\b|thick", re.IGNORECASE), 10),
    FieldPattern(
        "quantity",
        re.compile(r"^(?:q|qt|pcs|count|amount)\b|\bqty\b|quantit|\bpieces\b|\bno\.? off\b", re.IGNORECASE),
        10,
    ),
    FieldPattern(
        "label",
        re.compile(r"\bname\b|\blabel\b|\bpart\b|\bdesc|\bitem\b|\bcomponent\b|\bref\b", re.IGNORECASE),
        10,
    ),
    FieldPattern(
        "material",
        re.compile(r"\bmat(?:erial|\.)?\b|\bboard\b|\bsheet\b|\bdecor\b|\bcolou?r\b|\bsubstrate\b", re.IGNORECASE),
        5,
    ),
    FieldPattern("grain", re.compile(r"grain|rotat|direction", re.IGNORECASE), 5),
    FieldPattern("edgebanding", re.compile(r"edg|band|^eb$|\babs\b", re.IGNORECASE), 5),
    FieldPattern("notes", re.compile(r"note|comment|remark|memo", re.IGNORECASE), 5),
)

REQUIRED_BONUS = 10
CONSISTENCY_BONUS = 10
NON_NUMERIC_HEADER_BONUS = 5
MAX_MAPPING_SCORE = (
    sum(p.weight for p in FIELD_PATTERNS) + REQUIRED_BONUS + CONSISTENCY_BONUS + NON_NUMERIC_HEADER_BONUS
)
HEADER_SEARCH_ROWS = 10
HEADERLESS_MAPPING_CONFIDENCE = 0.8

_MAPPED_FIELD_CONFIDENCE = 0.95
_DEFAULTED_FIELD_CONFIDENCE = 0.7
_UNREASONABLE_FIELD_CONFIDENCE = 0.6

_NUMERIC_CELL_RE = re.compile(
    r"^\s*\d{1,3}(?:[, ]\d{3})*(?:\.\d+)?\s*(?:mm|cm|in|\")?\s*$|^\s*\d+(?:[.,]\d+)?\s*(?:mm|cm|in|\")?\s*$",
    re.IGNORECASE,
)


def is_numeric_cell(value: str | None) -> bool:
    """Return ``True`` if the whole cell is a number, optionally with a unit."""
    return bool(value) and bool(_NUMERIC_CELL_RE.match(str(value)))


def match_columns(headers: list[str]) -> dict[str, int]:
    """Map part fields to header column indexes.

    Returns:
        ``{field: column_index}`` for every field that claimed a header.
    """
    mapping: dict[str, int] = {}
    claimed: set[int] = set()
    for field_pattern in FIELD_PATTERNS:
        for index, header in enumerate(headers):
            if index in claimed or not header or is_numeric_cell(header):
                continue
            if field_pattern.pattern.search(header.strip()):
                mapping[field_pattern.field] = index
                claimed.add(index)
                break
    return mapping


def score_mapping(
    mapping: dict[str, int],
    headers: list[str],
    sample_rows: list[list[str]],
) -> float:
    """Score a column mapping in [0.0, 1.0]."""
    weights = {p.field: p.weight for p in FIELD_PATTERNS}
    score = sum(weights[field] for field in mapping)

    if "length" in mapping and "width" in mapping:
        score += REQUIRED_BONUS

    if sample_rows:
        consistent = sum(1 for row in sample_rows if len(row) == len(headers))
        if consistent / len(sample_rows) >= 0.8:
            score += CONSISTENCY_BONUS

    non_empty = [h for h in headers if h and h.strip()]
    if non_empty:
        numeric = sum(1 for h in non_empty if is_numeric_cell(h))
        if numeric / len(non_empty) < 0.3:
            score += NON_NUMERIC_HEADER_BONUS

    return max(0.0, min(1.0, score / MAX_MAPPING_SCORE))


def find_header_row(rows: list[list[str]]) -> tuple[int, dict[str, int]] | None:
    """Locate the header row among the first rows of a sheet.

    A header row claims at least two fields, one of them required.
    """
    required = {p.field for p in FIELD_PATTERNS if p.required}
    for index, row in enumerate(rows[:HEADER_SEARCH_ROWS]):
        mapping = match_columns(row)
        if len(mapping) >= 2 and required & mapping.keys():
            return index, mapping
    return None


class DeterministicParser:
    """Regex and heuristic extraction with no network access."""

    def __init__(
        self,
        text_parser: TextLineParser | None = None,
        voice_parser: VoiceParser | None = None,
    ) -> None:
        self._text_parser = text_parser or TextLineParser()
        self._voice_parser = voice_parser or VoiceParser()
        self._logger = get_logger(__name__)

    def parse(self, normalized: NormalizedInput, options: ParseOptions) -> ParseBatch:
        """Parse a normalized input into part records.

        Parameters
        ----------
        normalized:
            Output of the RawInputNormalizer.
        options:
            Caller options (units, dimension order, defaults).

        Returns
        -------
        ParseBatch
            Parts, per-row errors and row counts.

        Raises
        ------
        InputError
            For images and PDFs without a text layer, which only an
            extraction provider can read.
        """
        kind = normalized.kind
        if kind in (InputKind.CSV, InputKind.EXCEL):
            rows = normalized.rows or [split_row(line, normalized.delimiter) for line in normalized.lines]
            return self.parse_rows(rows, options)
        if kind == InputKind.VOICE:
            return self._voice_parser.parse(normalized.text, options)
        if kind == InputKind.TEXT or (kind == InputKind.PDF and normalized.has_text):
            return self._text_parser.parse_lines(normalized.lines, options)
        raise InputError(f"{normalized.name}: {kind.value} input needs an extraction provider")

    # ------------------------------------------------------------------
    # Tabular input
    # ------------------------------------------------------------------

    def parse_rows(self, rows: list[list[str]], options: ParseOptions) -> ParseBatch:
        """Parse spreadsheet rows, header row included when present."""
        rows = [[("" if cell is None else str(cell)).strip() for cell in row] for row in rows]
        rows = [row for row in rows if any(row)]

        header = find_header_row(rows)
        if header is not None:
            header_index, mapping = header
            headers = rows[header_index]
            body = rows[header_index + 1:]
            mapping_confidence = score_mapping(mapping, headers, body[:HEADER_SEARCH_ROWS])
            first_row_number = header_index + 2
        else:
            mapping = None
            headers = None
            body = rows
            mapping_confidence = HEADERLESS_MAPPING_CONFIDENCE
            first_row_number = 1

        parts: list[PartDraft] = []
        errors: list[RowError] = []
        skipped = 0

        for number, row in enumerate(body, start=first_row_number):
            source_ref = f"row:{number}"
            raw = " | ".join(row)
            if is_skip_line(raw):
                skipped += 1
                continue

            fields = self._mapped_fields(row, mapping) if mapping else self._positional_fields(row)
            outcome = self._build_part(fields, options, source_ref)

            if isinstance(outcome, PartDraft):
                parts.append(outcome)
                continue

            fallback = self._text_parser.parse_line(" ".join(row), options, source_ref=source_ref)
            if fallback.part is not None:
                parts.append(fallback.part)
            elif outcome is None or fallback.skipped:
                skipped += 1
            else:
                errors.append(RowError(source_ref=source_ref, message=outcome, raw=raw))

        batch = ParseBatch(
            method=SourceMethod.DETERMINISTIC,
            parts=parts,
            row_errors=errors,
            total_rows=len(body),
            skipped=skipped,
            mapping_confidence=mapping_confidence,
            headers=headers,
        )
        batch = self._apply_batch_confidence(batch)
        self._logger.info(
            "rows_parsed",
            rows=len(body),
            parts=len(parts),
            errors=len(errors),
            skipped=skipped,
            header_mode=mapping is not None,
            mapping_confidence=round(mapping_confidence, 3),
        )
        return batch

    @staticmethod
    def _mapped_fields(row: list[str], mapping: dict[str, int]) -> dict[str, str]:
        return {
            field: row[index]
            for field, index in mapping.items()
            if index < len(row) and row[index] != ""
        }

    @staticmethod
    def _positional_fields(row: list[str]) -> dict[str, str]:
        """Interpret a headerless row by cell position.

        Numeric cells:

        * 4 or more -- ``qty, L, W, T`` when the first is a small integer
          below both dimensions, otherwise ``L, W, T, qty``.
        * 3 -- ``L, W, T`` when the third is a plausible thickness;
          ``qty, L, W`` when the first is a plausible quantity; otherwise
          ``L, W`` and the third value is ignored.
        * 2 -- ``L, W``.

        Text in front of the numbers is the label.  Text after them is an
        edge code or grain mark when it reads as one, the first other
        value is the material and anything further becomes notes.
        """
        numeric_positions = [i for i, cell in enumerate(row) if is_numeric_cell(cell)]
        numbers = [parse_number(row[i]) or 0.0 for i in numeric_positions]
        fields: dict[str, str] = {}

        def qty_like(value: float, *dims: float) -> bool:
            return value == int(value) and 0 < value <= 500 and all(value < d for d in dims)

        if len(numbers) >= 4:
            a, b, c, d = numbers[:4]
            if qty_like(a, b, c):
                keys = ("quantity", "length", "width", "thickness")
            else:
                keys = ("length", "width", "thickness", "quantity")
        elif len(numbers) == 3:
            a, b, c = numbers
            if 3 <= c <= 100 and c < a and c < b:
                keys = ("length", "width", "thickness")
            elif qty_like(a, b, c):
                keys = ("quantity", "length", "width")
            else:
                keys = ("length", "width")
                fields["_warning"] = f"Unrecognised third value {row[numeric_positions[2]]} ignored"
        elif len(numbers) == 2:
            keys = ("length", "width")
        else:
            keys = ("length",)

        for key, position in zip(keys, numeric_positions, strict=False):
            fields[key] = row[position]

        if not numeric_positions:
            return fields

        leading = [cell for cell in row[: numeric_positions[0]] if cell]
        if leading:
            fields["label"] = " ".join(leading)

        extra_notes: list[str] = []
        last_numeric = numeric_positions[min(len(keys), len(numeric_positions)) - 1]
        for cell in row[last_numeric + 1:]:
            if not cell or is_numeric_cell(cell):
                continue
            edges = expand_edge_code(cell)
            grain = parse_grain(cell)
            if "edgebanding" not in fields and edges is not None and edges.applied_edges():
                fields["edgebanding"] = cell
            elif "grain" not in fields and grain is not None and grain[0] == GrainPolicy.ALONG_LENGTH:
                fields["grain"] = cell
            elif "material" not in fields:
                fields["material"] = cell
            else:
                extra_notes.append(cell)
        if extra_notes:
            fields["notes"] = "; ".join(extra_notes)
        return fields

    def _build_part(
        self,
        fields: dict[str, str],
        options: ParseOptions,
        source_ref: str,
    ) -> PartDraft | str | None:
        """Build a part from field strings.

        Returns the part, an error message for a row with a single bad
        dimension, or ``None`` for a structurally empty row.
        """
        units = options.units.value
        length_raw = parse_number(fields.get("length"))
        width_raw = parse_number(fields.get("width"))
        length_ok = length_raw is not None and length_raw > 0
        width_ok = width_raw is not None and width_raw > 0
        if not length_ok and not width_ok:
            return None
        if not length_ok:
            return "Invalid length"
        if not width_ok:
            return "Invalid width"

        length = to_mm(length_raw, units)
        width = to_mm(width_raw, units)
        if options.dim_order_hint == DimOrderHint.WXL:
            length, width = width, length

        warnings: list[str] = []
        if "_warning" in fields:
            warnings.append(fields["_warning"])

        thickness_raw = parse_number(fields.get("thickness"))
        thickness_found = thickness_raw is not None and thickness_raw > 0
        thickness = to_mm(thickness_raw, units) if thickness_found else options.default_thickness_mm

        quantity_raw = parse_number(fields.get("quantity"))
        quantity = max(1, round(quantity_raw or 1))
        if quantity_raw is None:
            warnings.append("Quantity not specified, defaulted to 1")

        grain_policy, allow_rotation = GrainPolicy.NONE, True
        if "grain" in fields:
            grain = parse_grain(fields["grain"])
            if grain is None:
                warnings.append(f"Unrecognised grain value {fields['grain']!r}")
            else:
                grain_policy, allow_rotation = grain

        edge_banding = None
        if "edgebanding" in fields:
            edge_banding = expand_edge_code(fields["edgebanding"])
            if edge_banding is not None and not edge_banding.applied_edges():
                edge_banding = None

        reasonable = is_reasonable_dimension(length) and is_reasonable_dimension(width)
        if not reasonable:
            warnings.append("Dimensions outside 10-5000 mm, verify units")

        dimension_confidence = _MAPPED_FIELD_CONFIDENCE if reasonable else _UNREASONABLE_FIELD_CONFIDENCE
        field_confidence = {
            "length": dimension_confidence,
            "width": dimension_confidence,
            "quantity": self._field_signal(quantity_raw is not None),
            "thickness": self._field_signal(thickness_found),
            "material": self._field_signal("material" in fields),
            "label": self._field_signal("label" in fields),
        }

        return PartDraft(
            label=fields.get("label"),
            quantity=quantity,
            length_mm=length,
            width_mm=width,
            thickness_mm=thickness,
            material_ref=fields.get("material") or options.default_material_id,
            grain_policy=grain_policy,
            allow_rotation=allow_rotation,
            edge_banding=edge_banding,
            notes=fields.get("notes"),
            warnings=warnings,
            provenance=Provenance(
                method=SourceMethod.DETERMINISTIC,
                source_ref=source_ref,
                confidence=_MAPPED_FIELD_CONFIDENCE,
                field_confidence=field_confidence,
            ),
        )

    @staticmethod
    def _field_signal(present: bool) -> float:
        return _MAPPED_FIELD_CONFIDENCE if present else _DEFAULTED_FIELD_CONFIDENCE

    @staticmethod
    def _apply_batch_confidence(batch: ParseBatch) -> ParseBatch:
        """Stamp the batch-level confidence onto every deterministic part.

        The value is also recorded as the ``structure`` field signal so the
        review step weighs header quality and row consistency.
        """
        confidence = round(merge_confidence(batch.success_rate * 0.95, batch.mapping_confidence, 0.3), 4)
        parts: list[Any] = []
        for part in batch.parts:
            if part.provenance.method == SourceMethod.DETERMINISTIC:
                signals = {**part.provenance.field_confidence, "structure": confidence}
                provenance = part.provenance.model_copy(
                    update={"confidence": confidence, "field_confidence": signals}
                )
                part = part.model_copy(update={"provenance": provenance})
            parts.append(part)
        return batch.model_copy(update={"parts": parts})
