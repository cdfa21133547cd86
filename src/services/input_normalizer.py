"""Raw input classification and normalization.

Every caller input, whether pasted text, an uploaded spreadsheet, a
dictation transcript, a photo of a hand-written list or a PDF, is
turned into one :class:`NormalizedInput` here before any parser sees
it.  This is the leaf of the pipeline: no network, no provider calls.

Detection order
---------------
1. ``kind_hint`` from the caller (the dictation UI sends VOICE).
2. Magic bytes (PDF, PNG, JPEG, WEBP, GIF, XLSX zip, legacy XLS).
3. File extension, then MIME type.
4. Text sniffing: a text body is delimited when its lines share a
   consistent tab/comma/semicolon/pipe count, otherwise free text.
"""

from __future__ import annotations

import csv
import io
from pathlib import PurePath

import fitz  # PyMuPDF
import openpyxl
from PIL import Image

from src.models.inputs import InputKind, NormalizedInput, RawInput
from src.utils.errors import InputError
from src.utils.logging import get_logger

# (prefix, kind, media type)
_MAGIC_SIGNATURES: tuple[tuple[bytes, InputKind, str], ...] = (
    (b"%PDF", InputKind.PDF, "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", InputKind.IMAGE, "image/png"),
    (b"\xff\xd8\xff", InputKind.IMAGE, "image/jpeg"),
    (b"GIF87a", InputKind.IMAGE, "image/gif"),
    (b"GIF89a", InputKind.IMAGE, "image/gif"),
)
_ZIP_MAGIC = b"PK\x03\x04"
_OLE_MAGIC = b"\xd0\xcf\x11\xe0"

_EXTENSION_KINDS: dict[str, tuple[InputKind, str | None]] = {
    ".pdf": (InputKind.PDF, "application/pdf"),
    ".png": (InputKind.IMAGE, "image/png"),
    ".jpg": (InputKind.IMAGE, "image/jpeg"),
    ".jpeg": (InputKind.IMAGE, "image/jpeg"),
    ".webp": (InputKind.IMAGE, "image/webp"),
    ".gif": (InputKind.IMAGE, "image/gif"),
    ".xlsx": (InputKind.EXCEL, None),
    ".xlsm": (InputKind.EXCEL, None),
    ".csv": (InputKind.CSV, "text/csv"),
    ".tsv": (InputKind.CSV, "text/tab-separated-values"),
}

_MIME_KINDS: dict[str, InputKind] = {
    "application/pdf": InputKind.PDF,
    "text/csv": InputKind.CSV,
    "text/tab-separated-values": InputKind.CSV,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": InputKind.EXCEL,
}

# Ties go to the delimiter least likely to appear inside a value.
DELIMITER_PRIORITY: tuple[str, ...] = ("\t", "|", ";", ",")

_PDF_RENDER_DPI = 150


def detect_delimiter(line: str) -> str | None:
    """Pick the most frequent delimiter in *line*.

    Returns ``None`` when the line holds none of tab, pipe, semicolon or
    comma (a single-column input).
    """
    counts = {delimiter: line.count(delimiter) for delimiter in DELIMITER_PRIORITY}
    best = max(DELIMITER_PRIORITY, key=lambda d: counts[d])
    return best if counts[best] > 0 else None


def split_row(line: str, delimiter: str | None) -> list[str]:
    """Split one delimited line into stripped cells (quotes honoured)."""
    if delimiter is None:
        return [line.strip()]
    cells = next(csv.reader([line], delimiter=delimiter, skipinitialspace=True), [])
    cells = [cell.strip() for cell in cells]
    if delimiter == "|":
        # markdown-style "| a | b |" rows
        while cells and cells[0] == "":
            cells.pop(0)
        while cells and cells[-1] == "":
            cells.pop()
    return cells


def looks_delimited(lines: list[str]) -> str | None:
    """Return the delimiter if *lines* read as a table, else ``None``.

    The first line must hold at least two of the delimiter (three
    columns).  A single line qualifies on its own; otherwise at least 60%
    of the lines must share the first line's count.
    """
    if not lines:
        return None
    delimiter = detect_delimiter(lines[0])
    if delimiter is None:
        return None
    expected = lines[0].count(delimiter)
    if expected < 2:
        return None
    if len(lines) == 1:
        return delimiter
    matching = sum(1 for line in lines if line.count(delimiter) == expected)
    return delimiter if matching / len(lines) >= 0.6 else None


def decode_text(data: bytes) -> str:
    """Decode text bytes, tolerating a BOM and legacy Windows encodings."""
    for encoding in ("utf-8-sig", "cp1252"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("latin-1")


class RawInputNormalizer:
    """Classifies raw input and produces a uniform token stream."""

    def __init__(self, max_pdf_pages: int = 10, max_image_dimension: int = 2048) -> None:
        self._max_pdf_pages = max_pdf_pages
        self._max_image_dimension = max_image_dimension
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, raw: RawInput) -> tuple[InputKind, str | None]:
        """Determine the input kind and, for binary documents, its media type.

        Raises
        ------
        InputError
            For binary content that is none of the supported formats.
        """
        if raw.kind_hint is not None:
            return raw.kind_hint, raw.mime_type

        data = raw.as_bytes()
        suffix = PurePath(raw.filename).suffix.lower() if raw.filename else ""

        for prefix, kind, media_type in _MAGIC_SIGNATURES:
            if data.startswith(prefix):
                return kind, media_type
        if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
            return InputKind.IMAGE, "image/webp"
        if data.startswith(_ZIP_MAGIC):
            if suffix in (".xlsx", ".xlsm") or (raw.mime_type and "spreadsheetml" in raw.mime_type):
                return InputKind.EXCEL, None
            raise InputError(f"{raw.display_name}: zip archives other than .xlsx workbooks are not supported")
        if data.startswith(_OLE_MAGIC):
            raise InputError(f"{raw.display_name}: legacy .xls workbooks are not supported, save as .xlsx or CSV")

        if suffix in _EXTENSION_KINDS:
            return _EXTENSION_KINDS[suffix]
        if raw.mime_type:
            mime = raw.mime_type.split(";")[0].strip().lower()
            if mime in _MIME_KINDS:
                return _MIME_KINDS[mime], mime
            if mime.startswith("image/"):
                return InputKind.IMAGE, mime

        if b"\x00" in data[:1024]:
            raise InputError(f"{raw.display_name}: unsupported binary input")

        lines = self._text_lines(decode_text(data))
        if looks_delimited(lines[:20]):
            return InputKind.CSV, "text/csv"
        return InputKind.TEXT, "text/plain"

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize(self, raw: RawInput) -> NormalizedInput:
        """Classify *raw* and build its :class:`NormalizedInput`.

        Raises
        ------
        InputError
            If the input is empty, unsupported or cannot be read.
        """
        if raw.size_bytes == 0:
            raise InputError(f"{raw.display_name}: input is empty")

        kind, media_type = self.classify(raw)
        self._logger.debug("input_classified", name=raw.display_name, kind=kind.value, media_type=media_type)

        if kind == InputKind.EXCEL:
            return self._normalize_excel(raw)
        if kind == InputKind.PDF:
            return self._normalize_pdf(raw)
        if kind == InputKind.IMAGE:
            return self._normalize_image(raw, media_type)

        text = raw.content if isinstance(raw.content, str) else decode_text(raw.content)
        lines = self._text_lines(text)
        if not lines:
            raise InputError(f"{raw.display_name}: input has no text")

        if kind == InputKind.CSV:
            delimiter = looks_delimited(lines[:20]) or detect_delimiter(lines[0])
            return NormalizedInput(
                kind=kind,
                name=raw.display_name,
                lines=lines,
                rows=[split_row(line, delimiter) for line in lines],
                delimiter=delimiter,
                media_type=media_type,
            )
        return NormalizedInput(kind=kind, name=raw.display_name, lines=lines, media_type=media_type)

    @staticmethod
    def _text_lines(text: str) -> list[str]:
        return [line.rstrip() for line in text.splitlines() if line.strip()]

    def _normalize_excel(self, raw: RawInput) -> NormalizedInput:
        try:
            workbook = openpyxl.load_workbook(io.BytesIO(raw.as_bytes()), read_only=True, data_only=True)
        except Exception as exc:
            raise InputError(f"{raw.display_name}: unreadable workbook ({exc})") from exc

        try:
            sheet = workbook.worksheets[0]
            rows = [
                [self._cell_text(value) for value in row]
                for row in sheet.iter_rows(values_only=True)
            ]
        finally:
            workbook.close()

        rows = [row for row in rows if any(cell for cell in row)]
        if not rows:
            raise InputError(f"{raw.display_name}: first sheet is empty")
        return NormalizedInput(
            kind=InputKind.EXCEL,
            name=raw.display_name,
            lines=["\t".join(row) for row in rows],
            rows=rows,
            delimiter="\t",
        )

    @staticmethod
    def _cell_text(value: object) -> str:
        if value is None:
            return ""
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value).strip()

    def _normalize_pdf(self, raw: RawInput) -> NormalizedInput:
        data = raw.as_bytes()
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as exc:
            raise InputError(f"{raw.display_name}: unreadable PDF ({exc})") from exc

        lines: list[str] = []
        page_images: list[bytes] = []
        try:
            page_count = len(doc)
            for page_num in range(min(page_count, self._max_pdf_pages)):
                page = doc[page_num]
                text = page.get_text("text").strip()
                if text:
                    lines.extend(self._text_lines(text))
                else:
                    # Scanned page: render for the vision path.
                    page_images.append(page.get_pixmap(dpi=_PDF_RENDER_DPI).tobytes("png"))
        finally:
            doc.close()

        if page_count > self._max_pdf_pages:
            self._logger.warning(
                "pdf_pages_truncated",
                name=raw.display_name,
                page_count=page_count,
                max_pages=self._max_pdf_pages,
            )
        self._logger.info(
            "pdf_normalized",
            name=raw.display_name,
            pages=page_count,
            text_lines=len(lines),
            scanned_pages=len(page_images),
        )
        return NormalizedInput(
            kind=InputKind.PDF,
            name=raw.display_name,
            lines=lines,
            payload=data,
            media_type="application/pdf",
            page_images=page_images,
            page_count=page_count,
        )

    def _normalize_image(self, raw: RawInput, media_type: str | None) -> NormalizedInput:
        payload, media_type = self._downscale_if_oversized(raw.as_bytes(), media_type or "image/png")
        return NormalizedInput(
            kind=InputKind.IMAGE,
            name=raw.display_name,
            payload=payload,
            media_type=media_type,
            page_count=1,
        )

    def _downscale_if_oversized(self, image_data: bytes, media_type: str) -> tuple[bytes, str]:
        """Downscale an image whose largest side exceeds the configured limit.

        Oversized photos are re-encoded as JPEG.  Images already within
        bounds are returned untouched.
        """
        try:
            img = Image.open(io.BytesIO(image_data))
            largest = max(img.size)
            if largest <= self._max_image_dimension:
                return image_data, media_type

            scale = self._max_image_dimension / largest
            new_size = (int(img.size[0] * scale), int(img.size[1] * scale))
            img = img.convert("RGB").resize(new_size, Image.LANCZOS)
            buf = io.BytesIO()
            img.save(buf, format="JPEG", quality=90)
        except Exception as exc:
            # The provider can still take the original bytes.
            self._logger.warning("image_downscale_failed", error=str(exc))
            return image_data, media_type

        self._logger.info(
            "image_downscaled",
            original_largest_dim=largest,
            new_size=new_size,
            original_bytes=len(image_data),
            new_bytes=buf.tell(),
        )
        return buf.getvalue(), "image/jpeg"

