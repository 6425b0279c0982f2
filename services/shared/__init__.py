"""
Shared utilities for BuildTrack services.

This package contains code shared across service processes:
- provider_settings: Configuration for the pluggable categorization provider
- observability: Telemetry, logging, and privacy utilities
"""

from .provider_settings import (
    SUPPORTED_PROVIDERS,
    REQUIRED_OPENAI_ENV_VARS,
    ProviderSettingsError,
    OpenAIConfig,
    ProviderSettings,
    load_provider_settings,
)

__all__ = [
    "SUPPORTED_PROVIDERS",
    "REQUIRED_OPENAI_ENV_VARS",
    "ProviderSettingsError",
    "OpenAIConfig",
    "ProviderSettings",
    "load_provider_settings",
]
