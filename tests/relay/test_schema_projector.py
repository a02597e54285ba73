"""Tests for relay/schema_projector.py

Covers:
- extract_preview_fields keeps only inPreview properties and narrows required
- extract_full_fields keeps everything, strips the flag
- build_schema_shape summaries for arrays, objects and unknowns
- make_all_properties_required recursion
- malformed input never raises
"""

import pytest

from relay.schema_projector import (
    build_schema_shape,
    extract_full_fields,
    extract_preview_fields,
    make_all_properties_required,
)


def _make_schema():
    return {
        "type": "object",
        "description": "A citation",
        "properties": {
            "title": {"type": "string", "inPreview": True},
            "url": {"type": "string", "inPreview": True},
            "body": {"type": "string"},
            "tags": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["title", "body"],
    }


class TestExtractPreviewFields:
    def test_keeps_only_flagged_properties(self):
        preview = extract_preview_fields(_make_schema())
        assert set(preview["properties"]) == {"title", "url"}

    def test_strips_flag(self):
        preview = extract_preview_fields(_make_schema())
        assert "inPreview" not in preview["properties"]["title"]
        assert preview["properties"]["title"] == {"type": "string"}

    def test_required_narrowed(self):
        preview = extract_preview_fields(_make_schema())
        assert preview["required"] == ["title"]

    def test_keeps_other_schema_keys(self):
        preview = extract_preview_fields(_make_schema())
        assert preview["type"] == "object"
        assert preview["description"] == "A citation"

    def test_truthy_but_not_true_flag_is_not_preview(self):
        schema = {"type": "object", "properties": {"a": {"type": "string", "inPreview": "yes"}}}
        assert extract_preview_fields(schema)["properties"] == {}

    def test_input_not_mutated(self):
        schema = _make_schema()
        extract_preview_fields(schema)
        assert schema["properties"]["title"]["inPreview"] is True

    @pytest.mark.parametrize("bad", [None, "schema", 42, []])
    def test_malformed_input(self, bad):
        assert extract_preview_fields(bad) == {"type": "object", "properties": {}}


class TestExtractFullFields:
    def test_keeps_every_property_without_flag(self):
        full = extract_full_fields(_make_schema())
        assert set(full["properties"]) == {"title", "url", "body", "tags"}
        assert all("inPreview" not in p for p in full["properties"].values())

    def test_required_untouched(self):
        assert extract_full_fields(_make_schema())["required"] == ["title", "body"]

    def test_missing_properties(self):
        assert extract_full_fields({"type": "object"})["properties"] == {}


class TestBuildSchemaShape:
    def test_scalars(self):
        assert build_schema_shape({"a": {"type": "string"}, "b": {"type": "number"}}) == {
            "a": "string",
            "b": "number",
        }

    def test_array_of_scalars(self):
        assert build_schema_shape({"tags": {"type": "array", "items": {"type": "string"}}}) == {"tags": ["string"]}

    def test_array_without_items(self):
        assert build_schema_shape({"data": {"type": "array"}}) == {"data": []}

    def test_array_of_objects(self):
        shape = build_schema_shape({
            "rows": {"type": "array", "items": {"type": "object", "properties": {"id": {"type": "integer"}}}},
        })
        assert shape == {"rows": [{"id": "integer"}]}

    def test_nested_object(self):
        shape = build_schema_shape({
            "author": {"type": "object", "properties": {"name": {"type": "string"}}},
        })
        assert shape == {"author": {"name": "string"}}

    def test_unknown(self):
        assert build_schema_shape({"x": {}}) == {"x": "unknown"}
        assert build_schema_shape({"x": "nonsense"}) == {"x": "unknown"}

    def test_not_a_dict(self):
        assert build_schema_shape(None) == {}


class TestMakeAllPropertiesRequired:
    def test_top_level(self):
        result = make_all_properties_required(_make_schema())
        assert result["required"] == ["title", "url", "body", "tags"]

    def test_nested_objects_and_items(self):
        schema = {
            "type": "object",
            "properties": {
                "author": {"type": "object", "properties": {"name": {"type": "string"}, "age": {"type": "integer"}}},
                "rows": {
                    "type": "array",
                    "items": {"type": "object", "properties": {"id": {"type": "string"}}},
                },
            },
        }
        result = make_all_properties_required(schema)
        assert result["properties"]["author"]["required"] == ["name", "age"]
        assert result["properties"]["rows"]["items"]["required"] == ["id"]

    def test_any_of_variants(self):
        schema = {"anyOf": [{"type": "object", "properties": {"a": {"type": "string"}}}]}
        assert make_all_properties_required(schema)["anyOf"][0]["required"] == ["a"]

    def test_input_not_mutated(self):
        schema = _make_schema()
        make_all_properties_required(schema)
        assert schema["required"] == ["title", "body"]

    def test_non_dict_passthrough(self):
        assert make_all_properties_required("x") == "x"
