"""Turn orchestrator configuration models."""

from pydantic import BaseModel, Field


class OrchestratorConfig(BaseModel):
    """Defaults applied by the conversation-turn orchestrator.

    Project configuration passed with each turn may override
    ``max_lock_attempts``; everything else is process-wide.
    """

    min_step_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Minimum gap in seconds between consecutive message times",
    )
    max_lock_attempts: int = Field(
        default=3,
        ge=0,
        description="Stagnant turns tolerated before the conversation locks",
    )
    default_language: str = Field(
        default="en",
        description="Language passed to the parser stage",
    )
    unknown_lock_reason: str = Field(
        default="Unknown",
        description="Reason recorded when a lock is requested without one",
    )
