"""Rate-limited, concurrency-gated proxy in front of an LLM provider."""

__version__ = "0.1.0"
