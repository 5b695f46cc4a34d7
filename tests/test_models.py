"""Tests for the LLM gateway."""

from unittest.mock import AsyncMock, patch

import pytest

from mnemon.exceptions import ConfigurationError, ProviderError
from mnemon.models import (
    ModelUsage,
    complete_json,
    get_model_params,
    merge_usages,
    parse_model_string,
    parse_usage,
)


def _response(content: str = '{"memories": []}', prompt_tokens: int = 120, completion_tokens: int = 8) -> dict:
    return {
        "model": "gpt-4o-mini-2024-07-18",
        "choices": [{"message": {"content": content}}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens, "cost": 0.0002},
    }


class TestParseModelString:
    def test_provider_and_model(self):
        assert parse_model_string("openai:gpt-4o-mini") == ("openai", "gpt-4o-mini", None)

    def test_variant(self):
        assert parse_model_string("ollama:qwen2.5-coder:14b") == ("ollama", "qwen2.5-coder", "14b")

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_model_string("gpt-4o")


class TestGetModelParams:
    def test_openai_uses_env_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        params = get_model_params("openai:gpt-4o-mini", temperature=0)
        assert params["model"] == "openai/gpt-4o-mini"
        assert params["api_key"] == "sk-test"
        assert params["temperature"] == 0

    def test_missing_key_is_configuration_error(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(ConfigurationError, match="ANTHROPIC_API_KEY"):
            get_model_params("anthropic:claude-3-haiku-20240307")

    def test_google_maps_to_gemini(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_API_KEY", "g-test")
        assert get_model_params("google:gemini-2.0-flash")["model"] == "gemini/gemini-2.0-flash"

    def test_ollama_needs_no_key(self, monkeypatch):
        monkeypatch.delenv("OLLAMA_BASE_URL", raising=False)
        params = get_model_params("ollama:qwen2.5-coder:14b")
        assert params["model"] == "ollama/qwen2.5-coder:14b"
        assert params["api_base"] == "http://localhost:11434"
        assert "api_key" not in params

    def test_bad_model_string_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            get_model_params("no-provider")


class TestUsage:
    def test_parse_usage(self):
        usage = parse_usage(_response(), "openai:gpt-4o-mini", 42)
        assert usage.model == "gpt-4o-mini-2024-07-18"
        assert usage.prompt_tokens == 120
        assert usage.completion_tokens == 8
        assert usage.total_tokens == 128
        assert usage.cost_usd == pytest.approx(0.0002)
        assert usage.duration_ms == 42

    def test_parse_usage_without_usage_block(self):
        assert parse_usage({"choices": []}, "openai:gpt-4o-mini", 1) is None

    def test_parse_usage_falls_back_to_requested_model(self):
        response = _response()
        del response["model"]
        assert parse_usage(response, "openai:gpt-4o-mini", 1).model == "openai:gpt-4o-mini"

    def test_merge_usages(self):
        first = ModelUsage(model="a", prompt_tokens=10, completion_tokens=2, total_tokens=12, cost_usd=0.1, duration_ms=5)
        second = ModelUsage(model="b", prompt_tokens=20, completion_tokens=3, total_tokens=23, cost_usd=0.2, duration_ms=7)

        merged = merge_usages(first, second)

        assert merged.model == "a,b"
        assert merged.total_tokens == 35
        assert merged.cost_usd == pytest.approx(0.3)
        assert merged.duration_ms == 12

    def test_merge_with_missing_side(self):
        only = ModelUsage(model="a")
        assert merge_usages(None, only) is only
        assert merge_usages(only, None) is only
        assert merge_usages(None, None) is None


class TestCompleteJson:
    @pytest.mark.asyncio
    async def test_requests_json_object(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        with patch("litellm.acompletion", new_callable=AsyncMock, return_value=_response('{"ok": true}')) as mock_llm:
            result = await complete_json("system prompt", "user content", "openai:gpt-4o-mini")

        assert result.text == '{"ok": true}'
        assert result.usage.total_tokens == 128

        kwargs = mock_llm.call_args.kwargs
        assert kwargs["model"] == "openai/gpt-4o-mini"
        assert kwargs["temperature"] == 0
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": "system prompt"}
        assert kwargs["messages"][1] == {"role": "user", "content": "user content"}

    @pytest.mark.asyncio
    async def test_transport_failure_is_provider_error(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        with patch("litellm.acompletion", new_callable=AsyncMock, side_effect=RuntimeError("connection reset")):
            with pytest.raises(ProviderError, match="connection reset") as exc_info:
                await complete_json("s", "u", "openai:gpt-4o-mini")

        assert exc_info.value.model == "openai:gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_missing_key_fails_before_request(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_llm:
            with pytest.raises(ConfigurationError):
                await complete_json("s", "u", "openai:gpt-4o-mini")

        mock_llm.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_choices_give_empty_text(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        with patch("litellm.acompletion", new_callable=AsyncMock, return_value={"choices": []}):
            result = await complete_json("s", "u", "openai:gpt-4o-mini")

        assert result.text == ""
        assert result.usage is None
