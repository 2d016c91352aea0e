"""Conversation domain: message models, time ordering, dedup keys and locking."""
