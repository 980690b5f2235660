"""
AI Usage Gateway.

Mediates calls to an external chat-completions API with rate limiting,
circuit breaking, response caching, cost accounting and daily quotas.
"""

__version__ = "0.1.0"
