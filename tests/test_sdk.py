"""
Unit tests for SDK layer.

Tests the OpenAI completion provider and its circuit breaker integration.
"""

from unittest.mock import Mock, patch

import pytest

from usage_guard.core.circuit_breaker import CircuitBreaker, CircuitState
from usage_guard.core.errors import ValidationError
from usage_guard.sdk import CompletionProvider, CompletionRequest, OpenAICompletionProvider

MESSAGES = [{"role": "user", "content": "Summarize this"}]


class TestOpenAICompletionProvider:
    """Test OpenAICompletionProvider wrapper."""

    def test_init_defaults(self):
        provider = OpenAICompletionProvider(client=Mock())

        assert provider.model == "gpt-4o-mini"
        assert provider.max_tokens == 1000
        assert provider.temperature == 0.7
        assert provider.timeout == 30.0
        assert isinstance(provider, CompletionProvider)

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="model is required"):
            OpenAICompletionProvider(model="")

    def test_init_unsupported_model(self):
        with pytest.raises(ValueError, match="Unsupported model"):
            OpenAICompletionProvider(model="gpt-2")

    @patch('usage_guard.sdk.openai_provider.OpenAI')
    def test_client_created_lazily_with_timeout(self, mock_openai_class):
        provider = OpenAICompletionProvider(timeout=12.0)
        mock_openai_class.assert_not_called()

        client = provider.client

        mock_openai_class.assert_called_once_with(timeout=12.0)
        assert client is mock_openai_class.return_value

    def test_invoke_applies_defaults(self):
        client = Mock()
        client.chat.completions.create.return_value.usage.total_tokens = 42
        provider = OpenAICompletionProvider(client=client)

        response = provider.invoke(CompletionRequest(messages=MESSAGES))

        assert response is client.chat.completions.create.return_value
        client.chat.completions.create.assert_called_once_with(
            model="gpt-4o-mini",
            messages=MESSAGES,
            temperature=0.7,
            max_tokens=1000,
        )

    def test_invoke_request_overrides(self):
        client = Mock()
        provider = OpenAICompletionProvider(client=client)

        provider.invoke(CompletionRequest(messages=MESSAGES, model="gpt-4o", max_tokens=200, temperature=0.0))

        _, kwargs = client.chat.completions.create.call_args
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["max_tokens"] == 200
        assert kwargs["temperature"] == 0.0

    def test_invoke_validation(self):
        client = Mock()
        provider = OpenAICompletionProvider(client=client)

        with pytest.raises(ValidationError):
            provider.invoke(CompletionRequest(messages=[]))
        with pytest.raises(ValidationError):
            provider.invoke(CompletionRequest(messages=MESSAGES, model="davinci"))
        client.chat.completions.create.assert_not_called()

    def test_api_errors_propagate(self):
        client = Mock()
        client.chat.completions.create.side_effect = RuntimeError("API timeout")
        provider = OpenAICompletionProvider(client=client)

        with pytest.raises(RuntimeError, match="API timeout"):
            provider.invoke(CompletionRequest(messages=MESSAGES))


class TestProviderBehindBreaker:
    """Test that provider errors drive the breaker but validation errors don't."""

    def test_api_failures_open_breaker(self, clock):
        client = Mock()
        client.chat.completions.create.side_effect = RuntimeError("503")
        provider = OpenAICompletionProvider(client=client)
        breaker = CircuitBreaker("openai", failure_threshold=2, clock=clock)

        for _ in range(2):
            with pytest.raises(RuntimeError):
                breaker.execute(lambda: provider.invoke(CompletionRequest(messages=MESSAGES)))

        assert breaker.state is CircuitState.OPEN

    def test_invalid_requests_keep_breaker_closed(self, clock):
        provider = OpenAICompletionProvider(client=Mock())
        breaker = CircuitBreaker("openai", failure_threshold=2, clock=clock)

        for _ in range(3):
            with pytest.raises(ValidationError):
                breaker.execute(lambda: provider.invoke(CompletionRequest(messages=[])))

        assert breaker.state is CircuitState.CLOSED
