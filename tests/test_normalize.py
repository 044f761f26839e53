"""
Usage Normalization Tests
=========================
Tests for reading usage from both OpenAI response shapes.
"""

from types import SimpleNamespace

from revenium_openai.normalize import get_field, get_path, has_valid_usage, normalize_usage


class TestGetField:
    """Tests for field access on dicts and objects."""

    def test_dict_and_object(self):
        """Test dicts and attribute objects read the same way."""
        assert get_field({"a": 1}, "a") == 1
        assert get_field(SimpleNamespace(a=1), "a") == 1
        assert get_field(SimpleNamespace(), "a", "default") == "default"
        assert get_field(None, "a") is None

    def test_path(self):
        """Test nested lookup stops at the first missing field."""
        usage = {"completion_tokens_details": SimpleNamespace(reasoning_tokens=7)}

        assert get_path(usage, "completion_tokens_details", "reasoning_tokens") == 7
        assert get_path(usage, "prompt_tokens_details", "cached_tokens") is None


class TestNormalizeUsage:
    """Tests for normalize_usage."""

    def test_chat_shape(self):
        """Test prompt/completion token names."""
        usage = normalize_usage(
            {
                "prompt_tokens": 100,
                "completion_tokens": 40,
                "total_tokens": 140,
                "prompt_tokens_details": {"cached_tokens": 64},
                "completion_tokens_details": {"reasoning_tokens": 12},
            }
        )

        assert usage.input_tokens == 100
        assert usage.output_tokens == 40
        assert usage.total_tokens == 140
        assert usage.cached_tokens == 64
        assert usage.reasoning_tokens == 12

    def test_responses_shape(self):
        """Test input/output token names from the Responses API."""
        usage = normalize_usage(
            SimpleNamespace(
                input_tokens=20,
                output_tokens=5,
                total_tokens=25,
                input_tokens_details=SimpleNamespace(cached_tokens=0),
                output_tokens_details=None,
            )
        )

        assert usage.input_tokens == 20
        assert usage.cached_tokens == 0
        assert usage.reasoning_tokens is None

    def test_unreported_fields_stay_none(self):
        """Test missing details are not defaulted to zero."""
        usage = normalize_usage({"prompt_tokens": 8, "total_tokens": 8})

        assert usage.output_tokens is None
        assert usage.reasoning_tokens is None
        assert usage.cached_tokens is None

    def test_total_derived(self):
        """Test the total is derived when only parts are reported."""
        assert normalize_usage({"input_tokens": 3, "output_tokens": 4}).total_tokens == 7

    def test_none(self):
        """Test missing usage normalizes to None."""
        assert normalize_usage(None) is None


class TestHasValidUsage:
    """Tests for has_valid_usage."""

    def test_valid(self):
        """Test a complete usage block is accepted."""
        assert has_valid_usage({"usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}})

    def test_invalid(self):
        """Test missing or non-numeric counts are rejected."""
        assert not has_valid_usage({})
        assert not has_valid_usage({"usage": None})
        assert not has_valid_usage({"usage": {"prompt_tokens": "10", "total_tokens": "12"}})
        assert not has_valid_usage({"usage": {"completion_tokens": 3}})
