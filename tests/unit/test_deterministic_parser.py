"""Unit tests for the deterministic (no-network) cut-list parser."""

from __future__ import annotations

import pytest

from src.models.inputs import InputKind, NormalizedInput
from src.models.parts import GrainPolicy, ParseOptions, SourceMethod
from src.services.confidence_scorer import ConfidenceScorer
from src.services.deterministic_parser import (
    HEADERLESS_MAPPING_CONFIDENCE,
    DeterministicParser,
    find_header_row,
    is_numeric_cell,
    match_columns,
    score_mapping,
)
from src.utils.errors import InputError


@pytest.fixture()
def parser() -> DeterministicParser:
    return DeterministicParser()


# ======================================================================
# Column mapping
# ======================================================================


class TestColumnMapping:
    def test_match_columns(self) -> None:
        mapping = match_columns(["Part", "Length", "Width", "Qty", "Material", "Edge"])
        assert mapping == {
            "length": 1,
            "width": 2,
            "quantity": 3,
            "label": 0,
            "material": 4,
            "edgebanding": 5,
        }

    def test_numeric_headers_are_ignored(self) -> None:
        assert match_columns(["600", "400"]) == {}

    def test_find_header_row_skips_title_rows(self) -> None:
        rows = [["Kitchen job 42"], ["Name", "L", "W", "Qty"], ["Side", "720", "560", "2"]]
        found = find_header_row(rows)
        assert found is not None
        index, mapping = found
        assert index == 1
        assert mapping["length"] == 1
        assert mapping["width"] == 2

    def test_find_header_row_needs_required_field(self) -> None:
        assert find_header_row([["Name", "Material"], ["Side", "White"]]) is None

    def test_score_mapping_full_marks(self) -> None:
        headers = ["Name", "Length", "Width", "Thickness", "Qty", "Material", "Grain", "Edge", "Notes"]
        mapping = match_columns(headers)
        rows = [["Side", "720", "560", "18", "2", "White", "GL", "2L", "-"]]
        assert score_mapping(mapping, headers, rows) == pytest.approx(1.0)

    def test_score_mapping_partial(self) -> None:
        headers = ["Length", "Width"]
        score = score_mapping(match_columns(headers), headers, [["720", "560"]])
        # 20 + 20 + 10 + 10 + 5 out of 115
        assert score == pytest.approx(65 / 115)

    def test_is_numeric_cell(self) -> None:
        assert is_numeric_cell("600")
        assert is_numeric_cell("1,200")
        assert is_numeric_cell("18 mm")
        assert not is_numeric_cell("2L")
        assert not is_numeric_cell("")


# ======================================================================
# Row parsing
# ======================================================================


class TestParseRows:
    def test_headerless_pipe_row(self, parser: DeterministicParser, options: ParseOptions) -> None:
        batch = parser.parse_rows([["2", "600", "400", "18", "WHITE"]], options)
        assert len(batch.parts) == 1
        part = batch.parts[0]
        assert part.quantity == 2
        assert part.length_mm == 600.0
        assert part.width_mm == 400.0
        assert part.thickness_mm == 18.0
        assert part.material_ref == "WHITE"
        assert part.provenance.method == SourceMethod.DETERMINISTIC
        assert part.provenance.source_ref == "row:1"
        assert batch.mapping_confidence == HEADERLESS_MAPPING_CONFIDENCE
        assert batch.headers is None

    def test_header_mapped_rows(self, parser: DeterministicParser, options: ParseOptions) -> None:
        rows = [
            ["Name", "Length", "Width", "Qty", "Grain", "Edge"],
            ["Side", "720", "560", "2", "GL", "2L2W"],
            ["Shelf", "560", "300", "4", "", "L1"],
        ]
        batch = parser.parse_rows(rows, options)
        assert len(batch.parts) == 2
        side, shelf = batch.parts
        assert side.label == "Side"
        assert side.grain_policy == GrainPolicy.ALONG_LENGTH
        assert side.allow_rotation is False
        assert side.edge_banding is not None
        assert side.edge_banding.applied_edges() == ["L1", "L2", "W1", "W2"]
        assert side.provenance.source_ref == "row:2"
        assert shelf.quantity == 4
        assert shelf.grain_policy == GrainPolicy.NONE
        assert batch.headers == rows[0]

    def test_invalid_dimension_reported(self, parser: DeterministicParser, options: ParseOptions) -> None:
        rows = [
            ["Name", "Length", "Width", "Qty"],
            ["Side", "720", "560", "2"],
            ["Broken", "720", "abc", "1"],
        ]
        batch = parser.parse_rows(rows, options)
        assert len(batch.parts) == 1
        assert len(batch.row_errors) == 1
        error = batch.row_errors[0]
        assert error.source_ref == "row:3"
        assert error.message == "Invalid width"
        assert error.raw == "Broken | 720 | abc | 1"

    def test_totals_row_skipped(self, parser: DeterministicParser, options: ParseOptions) -> None:
        rows = [["Name", "Length", "Width"], ["Side", "720", "560"], ["Total", "", ""]]
        batch = parser.parse_rows(rows, options)
        assert len(batch.parts) == 1
        assert batch.skipped == 1
        assert batch.success_rate == 1.0

    def test_three_numbers_with_thickness(self, parser: DeterministicParser, options: ParseOptions) -> None:
        part = parser.parse_rows([["Door", "700", "400", "18"]], options).parts[0]
        assert part.label == "Door"
        assert (part.length_mm, part.width_mm, part.thickness_mm) == (700.0, 400.0, 18.0)
        assert part.quantity == 1
        assert "Quantity not specified, defaulted to 1" in part.warnings

    def test_three_numbers_with_leading_quantity(self, parser: DeterministicParser, options: ParseOptions) -> None:
        part = parser.parse_rows([["3", "700", "400"]], options).parts[0]
        assert part.quantity == 3
        assert (part.length_mm, part.width_mm) == (700.0, 400.0)

    def test_batch_confidence_stamped(self, parser: DeterministicParser, options: ParseOptions) -> None:
        batch = parser.parse_rows([["2", "600", "400", "18", "WHITE"]], options)
        # 0.95 * 0.7 + 0.8 * 0.3
        assert batch.parts[0].provenance.confidence == pytest.approx(0.905)
        assert batch.parts[0].provenance.field_confidence["structure"] == pytest.approx(0.905)

    def test_ragged_rows_lower_reviewed_confidence(self, parser: DeterministicParser, options: ParseOptions) -> None:
        header = ["Name", "Length", "Width", "Qty"]
        consistent = [header, ["Side", "720", "560", "2"], ["Shelf", "560", "300", "4"]]
        ragged = [header, ["Side", "720", "560", "2", "x", "y"], ["Shelf", "560", "300", "4", "x"]]
        scorer = ConfidenceScorer()

        clean_batch = parser.parse_rows(consistent, options)
        ragged_batch = parser.parse_rows(ragged, options)
        assert ragged_batch.mapping_confidence < clean_batch.mapping_confidence

        clean_reviewed, _ = scorer.review(clean_batch.parts)
        ragged_reviewed, _ = scorer.review(ragged_batch.parts)
        assert ragged_reviewed[0].provenance.confidence < clean_reviewed[0].provenance.confidence

    def test_unreasonable_dimensions_warn(self, parser: DeterministicParser, options: ParseOptions) -> None:
        part = parser.parse_rows([["Strip", "8000", "50"]], options).parts[0]
        assert "Dimensions outside 10-5000 mm, verify units" in part.warnings
        assert part.provenance.field_confidence["length"] == 0.6


# ======================================================================
# Dispatch by input kind
# ======================================================================


class TestParseDispatch:
    def test_csv_input(self, parser: DeterministicParser, options: ParseOptions) -> None:
        normalized = NormalizedInput(
            kind=InputKind.CSV,
            name="list.csv",
            lines=["Name,Length,Width", "Side,720,560"],
            rows=[["Name", "Length", "Width"], ["Side", "720", "560"]],
            delimiter=",",
        )
        batch = parser.parse(normalized, options)
        assert batch.method == SourceMethod.DETERMINISTIC
        assert len(batch.parts) == 1

    def test_text_input(self, parser: DeterministicParser, options: ParseOptions) -> None:
        normalized = NormalizedInput(kind=InputKind.TEXT, name="pasted", lines=["Side 720x560 qty 2"])
        batch = parser.parse(normalized, options)
        assert batch.method == SourceMethod.TEXT
        assert batch.parts[0].quantity == 2

    def test_voice_input(self, parser: DeterministicParser, options: ParseOptions) -> None:
        normalized = NormalizedInput(kind=InputKind.VOICE, name="dictation", lines=["seven twenty by five sixty"])
        batch = parser.parse(normalized, options)
        assert batch.method == SourceMethod.VOICE
        assert batch.parts[0].length_mm == 720.0

    def test_image_needs_provider(self, parser: DeterministicParser, options: ParseOptions) -> None:
        normalized = NormalizedInput(kind=InputKind.IMAGE, name="photo.png", payload=b"png")
        with pytest.raises(InputError, match="needs an extraction provider"):
            parser.parse(normalized, options)
