"""
Base class for upstream item sources.

All sources inherit from ItemSource and implement:
- fetch_page(): Get one page of raw item dictionaries for a location
- fetch_item_detail(): Optional per-item detail used by enrichment
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from functools import wraps
from typing import Optional

from ..models import ItemRecord

logger = logging.getLogger(__name__)


def retry_async(exceptions, tries: int = 3, delay: float = 1.0, backoff: float = 2.0):
    """
    Retry a coroutine function on the given exceptions.

    The last attempt is not caught, so the final failure propagates
    to the caller unchanged.
    """
    def deco_retry(f):
        @wraps(f)
        async def f_retry(*args, **kwargs):
            mtries, mdelay = tries, delay
            while mtries > 1:
                try:
                    return await f(*args, **kwargs)
                except exceptions as e:
                    logger.warning(f"Retryable error: {e}, retrying in {mdelay} sec")
                    await asyncio.sleep(mdelay)
                    mtries -= 1
                    mdelay *= backoff
            return await f(*args, **kwargs)
        return f_retry
    return deco_retry


class ItemSource(ABC):
    """
    Abstract base class for marketplace sources.

    Subclasses must set:
    - name: short identifier used in logs

    Subclasses must implement:
    - fetch_page(): one page of raw item dictionaries
    """

    name: str = "source"

    @abstractmethod
    async def fetch_page(self, location_name: str, page: int, query: str = "") -> list[dict]:
        """
        Fetch one page of listings for a canonical location.

        Args:
            location_name: Canonical location name
            page: 1-based page number
            query: Optional search keywords

        Returns:
            List of raw item dictionaries (not yet normalized)

        Raises:
            TransientFetchError: timeouts and server errors, after retries
            UpstreamError: any other failed or unparseable response
        """
        pass

    async def fetch_item_detail(self, record: ItemRecord) -> Optional[dict]:
        """
        Fetch extra detail for one item.

        Returns:
            Raw fields to merge into the record, or None when this source
            cannot provide detail
        """
        return None

    async def aclose(self) -> None:
        """Release network resources."""
        return None
