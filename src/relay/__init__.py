"""Checkpointed, multi-run task sessions for language-model agents."""

__version__ = "0.1.0"
