"""Checkpointed iteration harness for backlog-driven generative agents."""

__version__ = "0.1.0"
