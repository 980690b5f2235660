"""
SDK for the AI Usage Gateway.

Provides programmatic access to the gated AI operations.
"""

from .gateway import AIGateway
from .upstream import UpstreamClient, UpstreamResponse

__all__ = ["AIGateway", "UpstreamClient", "UpstreamResponse"]
