"""Spirits: conversation-turn orchestration for AI personas."""
