"""Raw and normalized input models.

:class:`RawInput` is what a caller hands to the pipeline: bytes or text
plus whatever naming hints it has.  The RawInputNormalizer classifies it
and produces a :class:`NormalizedInput`, the uniform token stream the
parsers consume.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class InputKind(str, Enum):  # noqa: UP042
    TEXT = "text"
    CSV = "csv"
    EXCEL = "excel"
    VOICE = "voice"
    IMAGE = "image"
    PDF = "pdf"

    @property
    def is_binary_document(self) -> bool:
        """Image and PDF inputs need a vision-capable extraction provider."""
        return self in (InputKind.IMAGE, InputKind.PDF)


class RawInput(BaseModel):
    """One caller-supplied input."""

    model_config = ConfigDict(frozen=True)

    content: bytes | str
    filename: str | None = None
    mime_type: str | None = None
    # Explicit kind from the caller (e.g. the dictation UI sends VOICE);
    # skips detection when set.
    kind_hint: InputKind | None = None

    @property
    def display_name(self) -> str:
        return self.filename or "pasted-input"

    @property
    def size_bytes(self) -> int:
        if isinstance(self.content, bytes):
            return len(self.content)
        return len(self.content.encode("utf-8"))

    def as_bytes(self) -> bytes:
        if isinstance(self.content, bytes):
            return self.content
        return self.content.encode("utf-8")


class NormalizedInput(BaseModel):
    """Uniform view of an input after classification.

    ``lines`` holds the non-empty text lines.  For delimited and
    spreadsheet inputs ``rows`` holds the cell tokens of every line
    (header included).  Binary documents keep their ``payload`` and, for
    PDFs, any text layer in ``lines`` plus rendered ``page_images`` for
    scanned pages.
    """

    model_config = ConfigDict(frozen=True)

    kind: InputKind
    name: str
    lines: list[str] = Field(default_factory=list)
    rows: list[list[str]] = Field(default_factory=list)
    delimiter: str | None = None
    payload: bytes | None = None
    media_type: str | None = None
    page_images: list[bytes] = Field(default_factory=list)
    page_count: int = 0

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    @property
    def has_text(self) -> bool:
        return any(line.strip() for line in self.lines)
