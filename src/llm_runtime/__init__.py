"""Provider-agnostic LLM runtime."""

__version__ = "0.1.0"
