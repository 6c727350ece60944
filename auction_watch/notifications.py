"""
Notification module for Auction Watch.

Delivers rule matches to interested parties. Delivery is best effort:
the rule engine logs notifier failures and carries on.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from typing import Callable

from .models import StoredResult

logger = logging.getLogger(__name__)


# =============================================================================
# MESSAGE TEMPLATES
# =============================================================================

MATCH_MESSAGE = "[{rule_name}] {title} - {price_display} - {time_display} left @ {location} {url}"


def format_match(result: StoredResult) -> str:
    """One-line human readable summary of a match."""
    item = result.item
    price_display = f"${item.current_bid:,.2f}" if item.current_bid is not None else "no bid"
    if result.time_left_minutes is None:
        time_display = "?"
    elif result.time_left_minutes >= 60:
        time_display = f"{result.time_left_minutes // 60}h {result.time_left_minutes % 60}m"
    else:
        time_display = f"{result.time_left_minutes}m"

    return MATCH_MESSAGE.format(
        rule_name=result.rule_name,
        title=item.title or f"Item {item.item_id}",
        price_display=price_display,
        time_display=time_display,
        location=item.location_name,
        url=item.source_url,
    )


# =============================================================================
# NOTIFIERS
# =============================================================================

class Notifier(ABC):
    """Receives each rule match as it is stored."""

    @abstractmethod
    async def notify(self, result: StoredResult) -> None:
        pass


class LoggingNotifier(Notifier):
    """Default notifier: one log line per match."""

    async def notify(self, result: StoredResult) -> None:
        logger.info(f"Match: {format_match(result)}")


class CallbackNotifier(Notifier):
    """
    Wraps a plain function or coroutine function.

    Usage:
        seen = []
        engine = RuleEngine(store, notifier=CallbackNotifier(seen.append))
    """

    def __init__(self, callback: Callable):
        self.callback = callback

    async def notify(self, result: StoredResult) -> None:
        outcome = self.callback(result)
        if inspect.isawaitable(outcome):
            await outcome
