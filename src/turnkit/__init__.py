"""turnkit: conversational-turn orchestration over streaming AI backends."""

__version__ = "0.1.0"
