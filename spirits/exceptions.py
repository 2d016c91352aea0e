"""Exception hierarchy for the turn orchestrator.

Validation failures are raised before any state is touched. Stage failures
carry the originating :class:`~spirits.conversation.models.enums.Stage` and
chain the callback's exception as ``__cause__``.
"""

from spirits.conversation.models.enums import Stage

# Stages whose failure aborts the turn; the rest lock the conversation.
FATAL_STAGES: frozenset[Stage] = frozenset({Stage.PARSE, Stage.CONTEXTUALIZE, Stage.WORKFLOW})


class SpiritsError(Exception):
    """Base exception for all orchestrator errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class TurnValidationError(SpiritsError):
    """Raised when the turn input violates a precondition."""


class StageError(SpiritsError):
    """Raised (or reported) when a pipeline stage callback fails."""

    def __init__(
        self,
        stage: Stage,
        message: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(f"[{stage.value}] {message}")
        self.stage = stage
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    @property
    def fatal(self) -> bool:
        """Whether this stage aborts the turn instead of degrading it."""
        return self.stage in FATAL_STAGES
