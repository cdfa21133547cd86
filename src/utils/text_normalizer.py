"""Text and number normalization shared by the deterministic parsers.

Cut lists arrive typed by hand, exported from spreadsheets, or read back
from a dictation engine, so the same value shows up as ``600``, ``600mm``,
``"1,200"``, ``60 cm`` or ``23⅝"``.  The helpers here turn those into plain
millimetre floats:

1. **normalize_text** -- unifies the multiplication sign, dashes and
   whitespace so the line regexes only need one spelling.
2. **parse_number** -- pulls a float out of a cell, tolerating units and
   thousands separators.
3. **to_mm** -- converts a value in the caller's units to millimetres.
"""

import math
import re

_MULTIPLY_RE = re.compile(r"[×✕✖*]")
_DASH_RE = re.compile(r"[‐-―−]")
_SPACE_RE = re.compile(r"[ \t ]+")

# "1,200" / "1 200" style thousands separators
_THOUSANDS_RE = re.compile(r"(?<=\d)[,\s](?=\d{3}(?!\d))")
# European decimal comma: "600,5"
_DECIMAL_COMMA_RE = re.compile(r"^-?\d+,\d{1,2}$")
_NUMBER_CHARS_RE = re.compile(r"[^\d.\-]")

_UNIT_FACTORS: dict[str, float] = {
    "mm": 1.0,
    "cm": 10.0,
    "inch": 25.4,
    "in": 25.4,
    "m": 1000.0,
}

MIN_REASONABLE_MM = 10.0
MAX_REASONABLE_MM = 5000.0


def normalize_text(text: str) -> str:
    """Normalize separators and whitespace in a single line of input.

    ``720×560`` and ``720 * 560`` both become ``720x560``; typographic dashes
    become ``-``; runs of spaces/tabs collapse to one space.
    """
    normalized = _MULTIPLY_RE.sub("x", text)
    normalized = _DASH_RE.sub("-", normalized)
    normalized = _SPACE_RE.sub(" ", normalized)
    return normalized.strip()


def parse_number(value: object) -> float | None:
    """Extract a float from a spreadsheet cell or text token.

    Args:
        value: A number, or a string such as ``"600"``, ``"600 mm"``,
               ``"1,200"`` or ``"600,5"``.

    Returns:
        The parsed float, or ``None`` when no number can be read.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None

    text = str(value).strip()
    if not text:
        return None
    if _DECIMAL_COMMA_RE.match(text):
        text = text.replace(",", ".")
    text = _THOUSANDS_RE.sub("", text)
    cleaned = _NUMBER_CHARS_RE.sub("", text)
    if not cleaned or cleaned in {"-", ".", "-."}:
        return None
    try:
        number = float(cleaned)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def to_mm(value: float, units: str = "mm") -> float:
    """Convert *value* from *units* (mm, cm, inch) to millimetres.

    Raises:
        ValueError: If the unit is unknown.
    """
    try:
        factor = _UNIT_FACTORS[units.lower()]
    except KeyError:
        raise ValueError(f"Unknown unit: {units!r}") from None
    return round(value * factor, 2)


def is_reasonable_dimension(value_mm: float) -> bool:
    """Return ``True`` if a panel dimension is within the range a saw can cut."""
    return MIN_REASONABLE_MM <= value_mm <= MAX_REASONABLE_MM
