"""Tests for JSON extraction from model responses."""

import pytest

from ledgerpipe.responses import balanced_end, first_json, strip_code_fence


class TestStripCodeFence:
    def test_fenced(self):
        assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_plain(self):
        assert strip_code_fence("  [1]  ") == "[1]"


class TestBalancedEnd:
    def test_ignores_brackets_in_strings(self):
        text = '{"a": "}", "b": {"c": 1}} tail'
        assert text[:balanced_end(text, 0)] == '{"a": "}", "b": {"c": 1}}'

    def test_unclosed(self):
        assert balanced_end('{"a": 1', 0) is None


class TestFirstJson:
    def test_object_after_prose(self):
        assert first_json('Answer: {"x": [1, 2]} done', "{") == {"x": [1, 2]}

    def test_array_after_stray_bracket(self):
        assert first_json("see [note] then [1, 2]", "[") == [1, 2]

    @pytest.mark.parametrize("text", ["", "no json here", '{"a": '])
    def test_none(self, text):
        assert first_json(text, "{") is None
