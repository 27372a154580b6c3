"""Streaming threshold alerting for service log events."""

__version__ = "0.1.0"
