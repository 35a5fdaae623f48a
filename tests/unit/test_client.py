"""Tests for Langfuse metadata normalization and the client protocol."""

from unittest.mock import MagicMock

from agent_telemetry.client import Level, LangfuseClient, normalize_metadata


class TestNormalizeMetadata:
    def test_flattens_nested_mappings(self):
        assert normalize_metadata({"a": {"b": 1}}) == {"a.b": "1"}
        assert normalize_metadata({"a": {"b": {"c": "x"}}}) == {"a.b.c": "x"}

    def test_drops_none(self):
        assert normalize_metadata({"keep": "v", "drop": None}) == {"keep": "v"}

    def test_truncates_long_values(self):
        value = normalize_metadata({"long": "x" * 500})["long"]
        assert len(value) == 200
        assert value == "x" * 197 + "..."

    def test_value_at_limit_untouched(self):
        assert normalize_metadata({"v": "y" * 200})["v"] == "y" * 200

    def test_scalar_rendering(self):
        normalized = normalize_metadata({
            "flag": True,
            "off": False,
            "count": 3,
            "items": ["a", "b"],
            "level": Level.WARNING,
        })
        assert normalized == {
            "flag": "true",
            "off": "false",
            "count": "3",
            "items": '["a", "b"]',
            "level": "WARNING",
        }

    def test_non_mapping(self):
        assert normalize_metadata(None) == {}
        assert normalize_metadata(["a"]) == {}


class TestLangfuseClientProtocol:
    def test_mock_satisfies_protocol(self):
        assert isinstance(MagicMock(), LangfuseClient)

    def test_plain_object_does_not(self):
        assert not isinstance(object(), LangfuseClient)
