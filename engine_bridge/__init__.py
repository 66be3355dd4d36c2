"""MCP and OpenAI-compatible HTTP bridge for a conversational engine."""

__version__ = "0.1.0"
