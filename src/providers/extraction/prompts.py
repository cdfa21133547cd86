"""Instruction prompts shared by the extraction providers.

Kept deliberately short: one system prompt describing the output schema,
plus per-input user prompts carrying the caller's units and defaults.
"""

from __future__ import annotations

from src.models.parts import ParseOptions

EXTRACTION_SYSTEM_PROMPT = """You extract cut-list parts for panel manufacturing.
Return ONLY a JSON array, no prose, one object per part:
[{"row": 1, "label": "Side panel", "length": 720, "width": 560, "thickness": 18,
  "quantity": 2, "material": "white melamine", "grain": "none", "allowRotation": true,
  "edgeBanding": {"L1": true, "L2": false, "W1": false, "W2": false},
  "notes": "", "confidence": 0.95,
  "fieldConfidence": {"length": 0.98, "width": 0.98, "quantity": 0.95, "material": 0.9}}]
Rules:
- Dimensions in millimetres; length >= width (swap if needed).
- quantity defaults to 1 when not stated.
- grain is "none" or "along_length"; grain-locked parts have allowRotation false.
- Omit edgeBanding when no edges are banded.
- confidence and fieldConfidence are 0.0-1.0; lower them for anything you guessed."""


def build_text_prompt(text: str, options: ParseOptions) -> str:
    """User prompt for a text or tabular cut list."""
    return (
        f"{_context_line(options)}\n\n"
        "Extract every part from this cut list:\n\n"
        f"{text}"
    )


def build_image_prompt(options: ParseOptions, page: int | None = None, pages: int | None = None) -> str:
    """User prompt accompanying a photo or a rendered PDF page."""
    where = f" (page {page} of {pages})" if page and pages else ""
    return (
        f"{_context_line(options)}\n\n"
        f"Read the cut list in this image{where} and extract every part. "
        "Skip headers, totals and crossed-out rows."
    )


def _context_line(options: ParseOptions) -> str:
    return (
        f"Source units: {options.units.value} (convert to mm). "
        f"Dimension order: {options.dim_order_hint.value}. "
        f"Default thickness: {options.default_thickness_mm:g} mm."
    )
