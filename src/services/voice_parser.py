"""Dictation transcript parser.

Speech-to-text engines hand back what the operator said, not what they
meant: "seven twenty by five sixty, two pieces, white melamine".  This
module rewrites spoken numbers and connectors into the compact form the
:class:`TextLineParser` already understands ("720 x 560 2 pcs white
melamine") and delegates to it with ``SourceMethod.VOICE``.

Each sentence, or each segment separated by "next" / "then" / a newline,
is one part.
"""

from __future__ import annotations

import re

from src.models.parts import ParseBatch, ParseOptions, SourceMethod
from src.services.text_parser import TextLineParser
from src.utils.logging import get_logger

NUMBER_WORDS: dict[str, int] = {
    "zero": 0, "oh": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11,
    "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15, "sixteen": 16,
    "seventeen": 17, "eighteen": 18, "nineteen": 19, "twenty": 20, "thirty": 30,
    "forty": 40, "fifty": 50, "sixty": 60, "seventy": 70, "eighty": 80,
    "ninety": 90, "hundred": 100, "thousand": 1000,
}

# Homophones the recognizer substitutes for numbers.  Only read as numbers
# in a quantity position ("to pieces", "qty for").
_MISHEARINGS: dict[str, int] = {"to": 2, "too": 2, "for": 4, "won": 1, "ate": 8}

_QUANTITY_WORDS = frozenset({"pieces", "piece", "pcs", "off"})
_QUANTITY_LEADS = frozenset({"qty", "quantity"})

_SEGMENT_SPLIT_RE = re.compile(r"(?:(?<!\d)\.(?!\d)|[;\n]+|\bnext\b|\bthen\b)", re.IGNORECASE)
_TOKEN_RE = re.compile(r"[A-Za-z]+|\d+(?:\.\d+)?|[^\sA-Za-z\d]")

_CONNECTOR_RE = re.compile(r"\b(?:multiplied\s+by|times|cross)\b(?!\s*$)", re.IGNORECASE)
_QUANTITY_LEAD_RE = re.compile(r"\b(?:i\s+)?(?:need|make|cut)\s+(\d+)\b", re.IGNORECASE)
_MILLIMETRE_RE = re.compile(r"\b(?:millimet(?:er|re)s?|mil|mils)\b", re.IGNORECASE)
_THICK_RE = re.compile(r"\b(\d+)\s*(?:mm\s*)?thick\b", re.IGNORECASE)


def words_to_number(words: list[str]) -> int | None:
    """Convert a run of number words to an integer.

    ``["seven", "hundred", "twenty"]`` → 720, and the workshop shorthand
    ``["five", "sixty"]`` → 560 / ``["five", "sixty", "five"]`` → 565.
    """
    values = [NUMBER_WORDS.get(w, _MISHEARINGS.get(w)) for w in words if w != "and"]
    if not values or any(v is None for v in values):
        return None

    if len(values) == 2 and values[0] < 10 and 10 <= values[1] < 100:
        return values[0] * 100 + values[1]
    if len(values) == 2 and 20 <= values[0] < 100 and values[0] % 10 == 0 and values[1] < 10:
        return values[0] + values[1]
    if (
        len(values) == 3
        and values[0] < 10
        and 20 <= values[1] < 100
        and values[1] % 10 == 0
        and values[2] < 10
    ):
        return values[0] * 100 + values[1] + values[2]

    result = 0
    current = 0
    for value in values:
        if value == 100:
            current = max(current, 1) * 100
        elif value == 1000:
            result += max(current, 1) * 1000
            current = 0
        else:
            current += value
    total = result + current
    return total if total > 0 else None


def spoken_to_digits(text: str) -> str:
    """Rewrite spoken numbers in *text* as digits.

    Runs of number words collapse into one number.  When a run is directly
    followed by a quantity word ("pieces", "off") and has more than one
    word, its last small word is split off as the quantity:
    "five sixty two pieces" → "560 2 pieces".
    """
    tokens = _TOKEN_RE.findall(text.lower())
    output: list[str] = []
    index = 0

    while index < len(tokens):
        token = tokens[index]
        if token in NUMBER_WORDS or _is_quantity_mishearing(tokens, index):
            run = [token]
            cursor = index + 1
            while cursor < len(tokens) and (
                tokens[cursor] in NUMBER_WORDS
                or (tokens[cursor] == "and" and cursor + 1 < len(tokens) and tokens[cursor + 1] in NUMBER_WORDS)
            ):
                run.append(tokens[cursor])
                cursor += 1

            next_token = tokens[cursor] if cursor < len(tokens) else ""
            quantity: int | None = None
            if next_token in _QUANTITY_WORDS and len(run) > 1 and NUMBER_WORDS.get(run[-1], 100) < 10:
                quantity = NUMBER_WORDS[run[-1]]
                run = run[:-1]

            number = words_to_number(run)
            output.append(str(number) if number is not None else " ".join(run))
            if quantity is not None:
                output.append(str(quantity))
            index = cursor
            continue

        output.append(token)
        index += 1

    return " ".join(output)


def _is_quantity_mishearing(tokens: list[str], index: int) -> bool:
    token = tokens[index]
    if token not in _MISHEARINGS:
        return False
    following = tokens[index + 1] if index + 1 < len(tokens) else ""
    preceding = tokens[index - 1] if index > 0 else ""
    return following in _QUANTITY_WORDS or preceding in _QUANTITY_LEADS


def transcript_to_line(segment: str) -> str:
    """Turn one spoken segment into a line the text parser understands."""
    line = spoken_to_digits(segment)
    line = _CONNECTOR_RE.sub(" x ", line)
    line = _MILLIMETRE_RE.sub("mm", line)
    line = _THICK_RE.sub(r"\1mm thick", line)
    line = _QUANTITY_LEAD_RE.sub(r"qty \1", line)
    line = re.sub(r"\bpoint\s+(\d+)", r".\1", line)
    line = re.sub(r"(\d)\s+\.(\d)", r"\1.\2", line)
    line = re.sub(r"\s+([,])", r"\1", line)
    return re.sub(r"\s{2,}", " ", line).strip()


class VoiceParser:
    """Parses a dictation transcript into part records."""

    def __init__(self, line_parser: TextLineParser | None = None) -> None:
        self._line_parser = line_parser or TextLineParser(method=SourceMethod.VOICE)
        self._logger = get_logger(__name__)

    def split_segments(self, transcript: str) -> list[str]:
        """Split a transcript into one segment per spoken part."""
        return [segment.strip() for segment in _SEGMENT_SPLIT_RE.split(transcript) if segment.strip()]

    def parse(self, transcript: str, options: ParseOptions) -> ParseBatch:
        """Parse the full transcript.

        Parameters
        ----------
        transcript:
            Raw speech-to-text output.
        options:
            Caller options; units and defaults apply as for typed text.

        Returns
        -------
        ParseBatch
            Parts with ``SourceMethod.VOICE`` provenance and per-segment
            errors for segments without dimensions.
        """
        lines = [transcript_to_line(segment) for segment in self.split_segments(transcript)]
        self._logger.debug("voice_transcript_rewritten", segments=len(lines))
        return self._line_parser.parse_lines(lines, options)
