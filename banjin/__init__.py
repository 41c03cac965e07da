"""Banjin: a terminal assistant that routes LLM tool calls through operator confirmation."""

__version__ = "0.1.0"
