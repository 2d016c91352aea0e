"""Configuration model exports.

    from spirits.config.models import OrchestratorConfig, ObservabilityConfig
"""

from spirits.config.models.observability import (
    LoggingConfig,
    ObservabilityConfig,
)
from spirits.config.models.orchestrator import OrchestratorConfig

__all__ = [
    "LoggingConfig",
    "ObservabilityConfig",
    "OrchestratorConfig",
]
