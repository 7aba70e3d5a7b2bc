"""Tests for the LiteLLM provider: credentials, resilience kwargs and circuit breaker."""

import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from obsmem.config.schema import ResilienceConfig
from obsmem.providers.litellm_provider import LiteLLMProvider


def _response(content="ok", finish_reason="stop"):
    message = SimpleNamespace(content=content)
    usage = SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason=finish_reason)], usage=usage)


class TestCredentials:
    def test_explicit_key(self):
        assert LiteLLMProvider(api_key="k").has_credentials("gpt-4o-mini") is True

    def test_environment_lookup(self):
        provider = LiteLLMProvider()
        with patch("obsmem.providers.litellm_provider.litellm.validate_environment", return_value={"keys_in_environment": True}):
            assert provider.has_credentials("gpt-4o-mini") is True
        with patch("obsmem.providers.litellm_provider.litellm.validate_environment", return_value={"keys_in_environment": False}):
            assert provider.has_credentials("gpt-4o-mini") is False

    def test_lookup_error_means_no_credentials(self):
        provider = LiteLLMProvider()
        with patch("obsmem.providers.litellm_provider.litellm.validate_environment", side_effect=ValueError("unknown")):
            assert provider.has_credentials("mystery/model") is False


class TestChat:
    @pytest.mark.asyncio
    async def test_resilience_kwargs_passed(self):
        rc = ResilienceConfig(timeout=30, max_retries=1)
        provider = LiteLLMProvider(api_key="k", resilience_config=rc)
        mock = AsyncMock(return_value=_response("summary"))
        with patch("obsmem.providers.litellm_provider.acompletion", mock):
            response = await provider.chat(messages=[{"role": "user", "content": "p"}], model="gpt-4o-mini", temperature=0.0)
        assert response.content == "summary"
        assert response.usage["total_tokens"] == 15
        kwargs = mock.await_args.kwargs
        assert kwargs["request_timeout"] == 30
        assert kwargs["num_retries"] == 1
        assert kwargs["temperature"] == 0.0
        assert kwargs["api_key"] == "k"

    @pytest.mark.asyncio
    async def test_content_blocks_are_joined(self):
        provider = LiteLLMProvider(api_key="k")
        blocks = [{"type": "text", "text": "a"}, {"type": "thinking", "text": "x"}, {"type": "text", "text": "b"}]
        with patch("obsmem.providers.litellm_provider.acompletion", AsyncMock(return_value=_response(blocks))):
            response = await provider.chat(messages=[], model="m")
        assert response.content == "a\nb"

    @pytest.mark.asyncio
    async def test_exception_becomes_error_response(self):
        provider = LiteLLMProvider(api_key="k")
        with patch("obsmem.providers.litellm_provider.acompletion", AsyncMock(side_effect=RuntimeError("503"))):
            response = await provider.chat(messages=[], model="m")
        assert response.finish_reason == "error"
        assert "503" in response.content


class TestCircuitBreaker:
    def _make_provider(self, threshold=3, cooldown=1):
        rc = ResilienceConfig(circuit_breaker_threshold=threshold, circuit_breaker_cooldown=cooldown)
        return LiteLLMProvider(api_key="fake", resilience_config=rc)

    def test_opens_after_threshold(self):
        p = self._make_provider(threshold=3)
        for _ in range(3):
            p._record_result(False)
        err = p._check_circuit_breaker()
        assert err is not None
        assert "Circuit breaker open" in err

    def test_success_resets_counter(self):
        p = self._make_provider(threshold=3)
        p._record_result(False)
        p._record_result(True)
        assert p._consecutive_failures == 0

    def test_half_open_after_cooldown(self):
        p = self._make_provider(threshold=1, cooldown=1)
        p._record_result(False)
        p._circuit_open_until = time.monotonic() - 1
        assert p._check_circuit_breaker() is None

    def test_disabled_with_zero_threshold(self):
        p = self._make_provider(threshold=0)
        for _ in range(10):
            p._record_result(False)
        assert p._check_circuit_breaker() is None

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits_chat(self):
        p = self._make_provider(threshold=1, cooldown=60)
        p._record_result(False)
        mock = AsyncMock()
        with patch("obsmem.providers.litellm_provider.acompletion", mock):
            response = await p.chat(messages=[], model="m")
        assert response.finish_reason == "error"
        mock.assert_not_called()

    def test_set_resilience_swaps_config(self):
        p = LiteLLMProvider(api_key="k")
        assert p._check_circuit_breaker() is None
        p.set_resilience(ResilienceConfig(circuit_breaker_threshold=1))
        p._record_result(False)
        assert p._check_circuit_breaker() is not None
