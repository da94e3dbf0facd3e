"""
mcpbridge providers module.

This module provides abstractions for the supported LLM providers.
"""

from mcpbridge.providers.base import Provider, ProviderFactory, ProviderResponse, ProviderToolCall

__all__ = ["Provider", "ProviderFactory", "ProviderResponse", "ProviderToolCall"]
