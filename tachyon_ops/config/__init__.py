"""Target environment resolution."""

from .environments import (
    BUILTIN_ENVIRONMENTS,
    ConfigurationError,
    EnvironmentConfig,
    EnvironmentContext,
    RiskTier,
    resolve_environment,
)

__all__ = [
    "BUILTIN_ENVIRONMENTS",
    "ConfigurationError",
    "EnvironmentConfig",
    "EnvironmentContext",
    "RiskTier",
    "resolve_environment",
]
