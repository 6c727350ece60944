"""
Error taxonomy for Auction Watch.

Indexing and rule checks catch these at the item, page or location level.
Only StoreError is treated as fatal for the component that hit it.
"""


class AuctionWatchError(Exception):
    """Base class for all package errors."""


class UpstreamError(AuctionWatchError):
    """The marketplace returned something we cannot use."""


class TransientFetchError(UpstreamError):
    """Timeout, 5xx or transport failure talking to the marketplace."""


class MalformedRecordError(AuctionWatchError):
    """A raw or normalized item is missing a required field."""


class UnknownLocationError(AuctionWatchError):
    """A raw location string is not in the canonical whitelist."""

    def __init__(self, raw_location):
        self.raw_location = raw_location
        super().__init__(f"Unknown location: {raw_location!r}")


class ConfigurationError(AuctionWatchError):
    """Invalid rule fields or environment configuration."""


class StoreError(AuctionWatchError):
    """The embedded database is unreachable or failed an operation."""
