"""Conversation synchronization core of the chat client."""

__version__ = "0.1.0"
