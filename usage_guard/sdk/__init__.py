"""
SDK for Usage Guard.

Provides the completion provider adapters called through the circuit breaker.
"""

from .openai_provider import CompletionProvider, CompletionRequest, OpenAICompletionProvider

__all__ = ["CompletionProvider", "CompletionRequest", "OpenAICompletionProvider"]
