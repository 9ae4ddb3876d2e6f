"""Chorus - multi-responder orchestration core for conversational turns."""

__version__ = "0.1.0"
