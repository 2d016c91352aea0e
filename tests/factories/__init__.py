"""Test factories for creating test data."""

from tests.factories.turn import EmitRecorder, SequentialIds, TurnInputFactory

__all__ = [
    "EmitRecorder",
    "SequentialIds",
    "TurnInputFactory",
]
