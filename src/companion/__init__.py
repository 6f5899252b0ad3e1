"""Companion Link: real-time conversational transport for a chat/voice companion."""

__version__ = "0.1.0"
