"""
OpenAI completion provider.

Adapts OpenAI chat completions to the single blocking ``invoke(request)`` call
the usage accountant routes through its circuit breaker.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from openai import OpenAI

from ..core.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
AVAILABLE_MODELS = ("gpt-4o-mini", "gpt-4o", "gpt-3.5-turbo")
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class CompletionRequest:
    """A chat completion request; unset fields use the provider defaults."""
    messages: List[Dict[str, str]]
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


@runtime_checkable
class CompletionProvider(Protocol):
    """External completion provider: one blocking call per request."""

    def invoke(self, request: CompletionRequest) -> Any:
        ...


class OpenAICompletionProvider:
    """Completion provider backed by the OpenAI chat completions API.

    Errors from the API propagate unchanged so the circuit breaker can count
    them; malformed requests raise ``ValidationError``, which the breaker
    does not count.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[OpenAI] = None,
    ):
        """Initialize the provider.

        Args:
            model: Default model for requests that don't name one
            max_tokens: Default completion token cap
            temperature: Default sampling temperature
            timeout: Per-request timeout in seconds
            client: Preconfigured OpenAI client (built from the environment if omitted)

        Raises:
            ValueError: If model is missing or unsupported
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if model not in AVAILABLE_MODELS:
            raise ValueError(f"Unsupported model: {model}")

        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(timeout=self.timeout)
        return self._client

    def invoke(self, request: CompletionRequest) -> Any:
        """Create a chat completion.

        Args:
            request: Messages plus optional model/max_tokens/temperature

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValidationError: If messages are empty or the model is unsupported
            OpenAI API errors: Propagated without modification
        """
        if not request.messages:
            raise ValidationError("messages is required and cannot be empty")
        model = request.model or self.model
        if model not in AVAILABLE_MODELS:
            raise ValidationError(f"Unsupported model: {model}")

        logger.debug("Calling OpenAI model=%s messages=%d", model, len(request.messages))
        response = self.client.chat.completions.create(
            model=model,
            messages=request.messages,
            temperature=request.temperature if request.temperature is not None else self.temperature,
            max_tokens=request.max_tokens or self.max_tokens,
        )

        usage = getattr(response, "usage", None)
        logger.debug("OpenAI call succeeded, tokens=%s", getattr(usage, "total_tokens", "N/A"))
        return response
