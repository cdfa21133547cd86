"""Free-text cut-list line parser.

Handles lines the way people actually type them into a chat box or an
email::

    Side panel 720x560 18mm white melamine qty 2
    2x 600 x 400 GL
    Shelf - length 764 width 300, 4 pcs, edge 2L
    L720 W560 x2

Each line is parsed independently: quantity cue first (and only kept if
the remainder still holds a dimension pair), then dimensions, thickness,
grain, edge code, material and finally the label from what is left.
Lines that look like column headers, separators or totals are skipped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

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
from src.utils.cutlist_codes import expand_edge_code
from src.utils.logging import get_logger
from src.utils.text_normalizer import is_reasonable_dimension, normalize_text, to_mm

_NUM = r"(\d+(?:\.\d+)?)"
_UNIT = r"(?:\s*(?:mm|cm|in|\"))?"

_DIMENSION_PATTERNS: tuple[re.Pattern[str], ...] = (
    # 720x560, 720 x 560 x 18, 720mm x 560mm
    re.compile(rf"{_NUM}{_UNIT}\s*x\s*{_NUM}{_UNIT}(?:\s*x\s*{_NUM}{_UNIT})?", re.IGNORECASE),
    # 720 by 560
    re.compile(rf"{_NUM}{_UNIT}\s+by\s+{_NUM}{_UNIT}", re.IGNORECASE),
    # L720 W560, L: 720, W: 560
    re.compile(rf"\bL\s*[:=]?\s*{_NUM}{_UNIT}\s*[,;]?\s*W\s*[:=]?\s*{_NUM}{_UNIT}", re.IGNORECASE),
    # length 720 width 560
    re.compile(rf"\blength\s*[:=]?\s*{_NUM}{_UNIT}[\s,;]*(?:and\s+)?width\s*[:=]?\s*{_NUM}{_UNIT}", re.IGNORECASE),
)

_QUANTITY_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(?:qty|quantity)\s*(?:of\s*)?[:=]?\s*(\d+)\b", re.IGNORECASE),
    re.compile(r"\b(\d+)\s*(?:pcs|pc|pieces?|off)\b", re.IGNORECASE),
    re.compile(r"^\s*(\d{1,3})x\s+", re.IGNORECASE),
    re.compile(r"(?:^|\s)[x@]\s?(\d{1,3})\s*$", re.IGNORECASE),
    re.compile(r"\bq\s*(\d+)\b", re.IGNORECASE),
)

_THICKNESS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(?:thk|thick(?:ness)?|t)\s*[:=]?\s*(\d+(?:\.\d+)?)\s*(?:mm)?\b", re.IGNORECASE),
    re.compile(r"\b(\d+(?:\.\d+)?)\s*mm\s*(?:thick|thk)?\b", re.IGNORECASE),
)

_GRAIN_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bG[LW]\b"),
    re.compile(r"\bgrain\s*(?:along\s*)?(?:l|length|w|width)?\b", re.IGNORECASE),
)
_NO_ROTATE_RE = re.compile(r"\b(?:no\s*rotat(?:e|ion)|fixed|locked)\b", re.IGNORECASE)

_EDGE_RE = re.compile(r"\b(?:edges?|eb|banding)\s*[:=]?\s*([A-Za-z0-9+]+)", re.IGNORECASE)

_MATERIAL_WORDS = (
    r"white|black|grey|gray|oak|walnut|maple|birch|beech|cherry|ash|"
    r"mdf|hdf|ply|plywood|melamine|mel|mfc|chipboard|particleboard|laminate|veneer"
)
_MATERIAL_RE = re.compile(
    rf"\b((?:{_MATERIAL_WORDS})(?:\s+(?:{_MATERIAL_WORDS}|board))*)\b", re.IGNORECASE
)
_MATERIAL_LABEL_RE = re.compile(r"\bmat(?:erial)?\s*[:=]\s*([^,;]+)", re.IGNORECASE)

_HEADER_KEYWORDS = (
    "length", "width", "qty", "quantity", "thickness", "material",
    "label", "name", "part", "description", "grain", "edge",
)
_SKIP_LINE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^[\s\-=_*#|+]+$"),
    re.compile(r"^\s*(?:sub)?totals?\b", re.IGNORECASE),
    re.compile(r"^\s*sum\b", re.IGNORECASE),
    re.compile(r"^\s*\d+(?:\.\d+)?\s*$"),
    re.compile(r"^\s*page\s*\d+", re.IGNORECASE),
)

_LABEL_TRIM_RE = re.compile(r"^[\s\-:,.;|()]+|[\s\-:,.;|()]+$")
_MULTISPACE_RE = re.compile(r"\s{2,}")


@dataclass
class LineParseResult:
    """Outcome of parsing a single line."""

    part: PartDraft | None = None
    confidence: float = 0.0
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    skipped: bool = False


def is_header_line(line: str) -> bool:
    """Return ``True`` if *line* looks like a column header row."""
    lowered = line.lower()
    hits = sum(1 for keyword in _HEADER_KEYWORDS if re.search(rf"\b{keyword}\b", lowered))
    return hits >= 2 and not re.search(r"\d{2,}", lowered)


def is_skip_line(line: str) -> bool:
    """Return ``True`` for separators, totals and other lines with no part."""
    return any(pattern.search(line) for pattern in _SKIP_LINE_PATTERNS)


class TextLineParser:
    """Parses free-text lines into :class:`PartDraft` records."""

    def __init__(self, method: SourceMethod = SourceMethod.TEXT) -> None:
        self._method = method
        self._logger = get_logger(__name__)

    def parse_lines(self, lines: list[str], options: ParseOptions) -> ParseBatch:
        """Parse every line, collecting parts and per-line errors."""
        parts: list[PartDraft] = []
        errors: list[RowError] = []
        skipped = 0

        for number, line in enumerate(lines, start=1):
            result = self.parse_line(line, options, source_ref=f"line:{number}")
            if result.skipped:
                skipped += 1
            elif result.part is not None:
                parts.append(result.part)
            else:
                errors.append(
                    RowError(source_ref=f"line:{number}", message=result.error or "Unparseable line", raw=line)
                )

        self._logger.debug(
            "text_lines_parsed",
            method=self._method.value,
            lines=len(lines),
            parts=len(parts),
            errors=len(errors),
            skipped=skipped,
        )
        return ParseBatch(
            method=self._method,
            parts=parts,
            row_errors=errors,
            total_rows=len(lines),
            skipped=skipped,
        )

    def parse_line(
        self,
        line: str,
        options: ParseOptions,
        source_ref: str | None = None,
    ) -> LineParseResult:
        """Parse one line of free text.

        Parameters
        ----------
        line:
            The raw line.
        options:
            Caller options (units, dimension order, defaults).
        source_ref:
            Provenance reference recorded on the part, e.g. ``line:3``.

        Returns
        -------
        LineParseResult
            ``skipped`` for blank/header/separator lines, otherwise either
            a part or an ``error`` message.
        """
        text = normalize_text(line)
        if not text or is_skip_line(text) or is_header_line(text):
            return LineParseResult(skipped=True)

        warnings: list[str] = []
        remainder, quantity = self._extract_quantity(text)
        dims = self._extract_dimensions(remainder)
        if dims is None:
            return LineParseResult(error="No dimensions found")

        first, second, third, span = dims
        units = options.units.value
        length = to_mm(first, units)
        width = to_mm(second, units)
        if options.dim_order_hint == DimOrderHint.WXL:
            length, width = width, length
        if length <= 0 or width <= 0:
            return LineParseResult(error="Dimensions must be positive")

        before = remainder[: span[0]]
        after = remainder[span[1]:]
        rest = f"{before} {after}"

        thickness_mm, thickness_found = self._extract_thickness(third, after, units, options)
        grain, allow_rotation = self._extract_grain(rest)
        edge_banding = None
        edge_match = _EDGE_RE.search(rest)
        if edge_match:
            edge_banding = expand_edge_code(edge_match.group(1))
            if edge_banding is not None and not edge_banding.applied_edges():
                edge_banding = None
        material = self._extract_material(rest)
        label = self._extract_label(before, after)

        reasonable = is_reasonable_dimension(length) and is_reasonable_dimension(width)
        if not reasonable:
            warnings.append("Dimensions outside 10-5000 mm, verify units")
        if quantity is None:
            warnings.append("Quantity not specified, defaulted to 1")

        field_confidence = {
            "length": 0.85 if reasonable else 0.6,
            "width": 0.85 if reasonable else 0.6,
            "quantity": 0.9 if quantity is not None else 0.6,
            "thickness": 0.85 if thickness_found else 0.7,
            "material": 0.8 if material else 0.6,
            "label": 0.8 if label else 0.5,
        }
        confidence = self._line_score(reasonable, quantity is not None, bool(label), bool(material), thickness_found)

        part = PartDraft(
            label=label,
            quantity=max(1, quantity or 1),
            length_mm=length,
            width_mm=width,
            thickness_mm=thickness_mm,
            material_ref=material or options.default_material_id,
            grain_policy=grain,
            allow_rotation=allow_rotation,
            edge_banding=edge_banding,
            warnings=warnings,
            provenance=Provenance(
                method=self._method,
                source_ref=source_ref,
                confidence=confidence,
                field_confidence=field_confidence,
            ),
        )
        return LineParseResult(part=part, confidence=confidence, warnings=warnings)

    # ------------------------------------------------------------------
    # Field extraction
    # ------------------------------------------------------------------

    def _extract_quantity(self, text: str) -> tuple[str, int | None]:
        """Find a quantity cue whose removal still leaves a dimension pair."""
        for pattern in _QUANTITY_PATTERNS:
            match = pattern.search(text)
            if match is None:
                continue
            candidate = f"{text[: match.start()]} {text[match.end():]}".strip()
            if self._extract_dimensions(candidate) is None:
                continue
            value = int(match.group(1))
            if 0 < value <= 10000:
                return candidate, value
        return text, None

    def _extract_dimensions(
        self, text: str
    ) -> tuple[float, float, float | None, tuple[int, int]] | None:
        for pattern in _DIMENSION_PATTERNS:
            match = pattern.search(text)
            if match is None:
                continue
            groups = match.groups()
            first = float(groups[0])
            second = float(groups[1])
            third = float(groups[2]) if len(groups) > 2 and groups[2] else None
            return first, second, third, match.span()
        return None

    def _extract_thickness(
        self,
        third_dimension: float | None,
        after: str,
        units: str,
        options: ParseOptions,
    ) -> tuple[float, bool]:
        if third_dimension is not None:
            thickness = to_mm(third_dimension, units)
            if 3 <= thickness <= 100:
                return thickness, True
        for pattern in _THICKNESS_PATTERNS:
            match = pattern.search(after)
            if match:
                value = float(match.group(1))
                if 3 <= value <= 100:
                    return value, True
        return options.default_thickness_mm, False

    def _extract_grain(self, text: str) -> tuple[GrainPolicy, bool]:
        grain = GrainPolicy.NONE
        allow_rotation = True
        if any(pattern.search(text) for pattern in _GRAIN_PATTERNS):
            grain = GrainPolicy.ALONG_LENGTH
            allow_rotation = False
        if _NO_ROTATE_RE.search(text):
            allow_rotation = False
        return grain, allow_rotation

    def _extract_material(self, text: str) -> str | None:
        labelled = _MATERIAL_LABEL_RE.search(text)
        if labelled:
            return labelled.group(1).strip() or None
        match = _MATERIAL_RE.search(text)
        if match:
            return match.group(1).strip()
        return None

    def _extract_label(self, before: str, after: str) -> str | None:
        """Use the text in front of the dimensions, else leading words after them."""
        candidate = self._clean_label(before)
        if candidate:
            return candidate
        tail = _THICKNESS_PATTERNS[1].sub(" ", after)
        tail = _MATERIAL_RE.sub(" ", tail)
        tail = _EDGE_RE.sub(" ", tail)
        tail = _NO_ROTATE_RE.sub(" ", tail)
        tail = re.sub(r"\bG[LW]\b", " ", tail)
        return self._clean_label(tail)

    @staticmethod
    def _clean_label(text: str) -> str | None:
        cleaned = _MULTISPACE_RE.sub(" ", _LABEL_TRIM_RE.sub("", text)).strip()
        if not cleaned or not re.search(r"[A-Za-z]", cleaned):
            return None
        return cleaned

    @staticmethod
    def _line_score(
        reasonable: bool,
        has_quantity: bool,
        has_label: bool,
        has_material: bool,
        has_thickness: bool,
    ) -> float:
        # dims 30 (+10 when plausible), qty 15, label 20, material 15, thickness 10
        score = 30 + (10 if reasonable else 0)
        score += 15 if has_quantity else 0
        score += 20 if has_label else 0
        score += 15 if has_material else 0
        score += 10 if has_thickness else 0
        return round(score / 100, 2)
