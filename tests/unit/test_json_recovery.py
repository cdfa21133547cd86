"""Unit tests for JSON recovery from model responses."""

from __future__ import annotations

from src.utils.json_recovery import (
    extract_part_objects,
    extract_parts_payload,
    looks_truncated,
    recover_json,
    strip_code_fence,
)


# ======================================================================
# recover_json
# ======================================================================


class TestRecoverJson:
    def test_plain_json(self) -> None:
        assert recover_json('[{"length": 600, "width": 400}]') == [{"length": 600, "width": 400}]

    def test_code_fence_is_stripped(self) -> None:
        text = '```json\n[{"length": 720, "width": 560}]\n```'
        assert recover_json(text) == [{"length": 720, "width": 560}]

    def test_array_embedded_in_prose(self) -> None:
        text = 'Here are the parts: [{"length": 600, "width": 400}] Hope this helps.'
        assert recover_json(text) == [{"length": 600, "width": 400}]

    def test_truncated_array_keeps_complete_objects(self) -> None:
        text = '[{"l":600,"w":400,"q":2},{"l":300,"w"'
        recovered = recover_json(text)
        assert isinstance(recovered, list)
        assert recovered[0] == {"l": 600, "w": 400, "q": 2}

    def test_unterminated_string_is_closed(self) -> None:
        recovered = recover_json('[{"label": "Side pan')
        assert recovered == [{"label": "Side pan"}]

    def test_partial_literal_becomes_null(self) -> None:
        recovered = recover_json('{"length": 600, "grain": tr')
        assert recovered == {"length": 600, "grain": None}

    def test_trailing_decimal_point_dropped(self) -> None:
        recovered = recover_json('[{"length": 600, "width": 40.')
        assert recovered == [{"length": 600, "width": 40}]

    def test_dangling_colon_becomes_null(self) -> None:
        recovered = recover_json('{"length": 600, "width":')
        assert recovered == {"length": 600, "width": None}

    def test_empty_input_returns_none(self) -> None:
        assert recover_json("") is None
        assert recover_json("   ") is None

    def test_text_without_json_returns_none(self) -> None:
        assert recover_json("Sorry, I cannot read this image.") is None


# ======================================================================
# Helpers
# ======================================================================


class TestExtractPartObjects:
    def test_only_part_shaped_objects_are_kept(self) -> None:
        text = 'junk {"length": 1, "width": 2} more {"foo": 1} tail'
        assert extract_part_objects(text) == [{"length": 1, "width": 2}]

    def test_short_keys_count_as_part_shaped(self) -> None:
        text = 'x {"l": 3, "w": 4} y {"row": 2, "l": 5}'
        objects = extract_part_objects(text)
        assert {"l": 3, "w": 4} in objects
        assert {"row": 2, "l": 5} in objects

    def test_no_objects(self) -> None:
        assert extract_part_objects("nothing here") == []


class TestExtractPartsPayload:
    def test_list_of_dicts(self) -> None:
        assert extract_parts_payload([{"length": 1, "width": 2}, "noise"]) == [{"length": 1, "width": 2}]

    def test_parts_key(self) -> None:
        payload = {"parts": [{"length": 1, "width": 2}]}
        assert extract_parts_payload(payload) == [{"length": 1, "width": 2}]

    def test_single_part_object(self) -> None:
        assert extract_parts_payload({"length": 1, "width": 2}) == [{"length": 1, "width": 2}]

    def test_unrelated_value(self) -> None:
        assert extract_parts_payload("text") is None
        assert extract_parts_payload({"message": "no parts"}) is None


class TestFenceAndTruncation:
    def test_strip_code_fence(self) -> None:
        assert strip_code_fence("```\n[1, 2]\n```") == "[1, 2]"

    def test_strip_code_fence_leaves_plain_text(self) -> None:
        assert strip_code_fence("[1, 2]") == "[1, 2]"

    def test_looks_truncated(self) -> None:
        assert looks_truncated('[{"length": 600') is True
        assert looks_truncated('[{"length": 600}]') is False
