"""code-session-memory: searchable semantic memory for coding assistant sessions."""

__version__ = "0.1.0"
