"""
Sources package - Clients for marketplace listing data.

Each source module handles:
1. Fetching one page of listings per canonical location
2. Decoding the response into raw item dictionaries
3. Optionally fetching per-item detail for enrichment
"""

from .base import ItemSource, retry_async
from .bidfta import BidftaSource

__all__ = [
    "ItemSource",
    "BidftaSource",
    "retry_async",
]
