"""Pluggable provider implementations for expense categorization."""

from .openai_categorization import OpenAICategorizationProvider

__all__ = ["OpenAICategorizationProvider"]
