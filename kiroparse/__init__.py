"""Decode AWS binary event streams into Anthropic-style SSE events."""

__version__ = "0.1.0"