"""Conversation and message management core for the B2B marketplace client."""

__version__ = "0.1.0"
