"""Relay between a messaging account and an AI agent gateway."""

__version__ = "1.0.0"
