"""Tests for the shared JSON helpers."""

from types import SimpleNamespace

from llmgw.core.json_utils import (
    dumps_compact,
    get_path,
    join_text_parts,
    parse_arguments,
    parse_or_raw,
    try_parse_json,
    unwrap_tool_content,
)


class TestParsing:
    def test_try_parse_json_valid(self):
        result = try_parse_json('{"a": 1}')
        assert result.ok
        assert result.value == {"a": 1}

    def test_try_parse_json_invalid_keeps_raw(self):
        result = try_parse_json("invalid json{")
        assert not result.ok
        assert result.raw == "invalid json{"

    def test_try_parse_json_never_parses_non_strings(self):
        result = try_parse_json({"already": "parsed"})
        assert not result.ok
        assert result.raw == {"already": "parsed"}

    def test_parse_arguments(self):
        assert parse_arguments('{"location": "NYC"}') == {"location": "NYC"}
        assert parse_arguments({"x": 1}) == {"x": 1}
        assert parse_arguments("invalid json{") == {}
        assert parse_arguments("[1, 2]") == {}
        assert parse_arguments(None) == {}
        assert parse_arguments("") == {}

    def test_parse_or_raw(self):
        assert parse_or_raw('{"temperature": 72}') == {"temperature": 72}
        assert parse_or_raw("sunny") == "sunny"
        assert parse_or_raw(None) is None


class TestToolContent:
    def test_unwrap_text_block_list(self):
        content = '[{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]'
        assert unwrap_tool_content(content) == "a\nb"

    def test_unwrap_content_envelope(self):
        content = '{"content": [{"type": "text", "text": "{\\"x\\": 1}"}], "isError": false}'
        assert unwrap_tool_content(content) == '{"x": 1}'

    def test_unwrap_leaves_other_json(self):
        assert unwrap_tool_content('{"a": 1}') == '{"a": 1}'
        assert unwrap_tool_content('[{"type": "image"}]') == '[{"type": "image"}]'

    def test_unwrap_leaves_plain_text(self):
        assert unwrap_tool_content("plain text") == "plain text"

    def test_join_text_parts(self):
        assert join_text_parts("hello") == "hello"
        assert join_text_parts([
            {"type": "text", "text": "a"},
            {"type": "image_url", "image_url": {}},
            {"type": "text", "text": "b"},
        ]) == "ab"
        assert join_text_parts(None) is None


def test_get_path_through_dicts_and_attributes():
    error = SimpleNamespace(body={"error": {"message": "bad key"}})
    assert get_path(error, "body.error.message") == "bad key"
    assert get_path({"a": {"b": 2}}, "a.b") == 2
    assert get_path({"a": None}, "a.b", "default") == "default"
    assert get_path(error, "missing.path") is None


def test_dumps_compact():
    assert dumps_compact({"a": [1, 2], "b": "é"}) == '{"a":[1,2],"b":"é"}'
