"""Tests for token counting."""

from unittest.mock import Mock, patch

import pytest

from llm_runtime.providers.token_counters import (
    EstimationCounter,
    TiktokenCounter,
    TokenCounterType,
    UnifiedTokenCounter,
    estimate_tokens,
)


class TestEstimateTokens:
    @pytest.mark.parametrize("text,expected", [
        ("", 0),
        ("abc", 1),
        ("abcd", 1),
        ("abcde", 2),
        ("x" * 400, 100),
    ])
    def test_four_chars_per_token(self, text, expected):
        assert estimate_tokens(text) == expected

    def test_estimation_counter(self):
        result = EstimationCounter().count_tokens("Hello world!", "any-model")
        assert result.token_count == 3
        assert result.method == TokenCounterType.ESTIMATION
        assert result.estimated is True


class TestTiktokenCounter:
    """Test tiktoken model routing without loading encodings."""

    def test_encoding_for_known_models(self):
        counter = TiktokenCounter()
        assert counter._encoding_for("gpt-4o") == "o200k_base"
        assert counter._encoding_for("gpt-4") == "cl100k_base"

    def test_dated_snapshot_uses_prefix(self):
        assert TiktokenCounter()._encoding_for("gpt-4o-2024-08-06") == "o200k_base"

    def test_supports_model(self):
        counter = TiktokenCounter()
        assert counter.supports_model("gpt-3.5-turbo")
        assert not counter.supports_model("claude-3-opus")

    def test_count_uses_encoding(self):
        encoding = Mock()
        encoding.encode.return_value = [1, 2, 3]
        with patch("tiktoken.get_encoding", return_value=encoding) as get_encoding:
            counter = TiktokenCounter()
            result = counter.count_tokens("Hello world", "gpt-4")
            counter.count_tokens("again", "gpt-4")

        assert result.token_count == 3
        assert result.method == TokenCounterType.TIKTOKEN
        assert result.estimated is False
        get_encoding.assert_called_once_with("cl100k_base")


class TestUnifiedTokenCounter:
    """Test counter selection and fallback."""

    def test_no_counters_estimates(self):
        result = UnifiedTokenCounter([]).count_tokens("abcdefgh", "gpt-4")
        assert result.token_count == 2
        assert result.estimated

    def test_unsupported_model_estimates(self):
        counter = Mock()
        counter.supports_model.return_value = False
        result = UnifiedTokenCounter([counter]).count_tokens("abcd", "llama2")
        assert result.method == TokenCounterType.ESTIMATION
        counter.count_tokens.assert_not_called()

    def test_failing_counter_falls_back(self):
        counter = Mock()
        counter.supports_model.return_value = True
        counter.count_tokens.side_effect = OSError("offline")
        result = UnifiedTokenCounter([counter]).count_tokens("abcd", "gpt-4")
        assert result.method == TokenCounterType.ESTIMATION
        assert result.token_count == 1
