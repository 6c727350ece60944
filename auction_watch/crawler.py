"""
Rule Engine for Auction Watch.

Checks every active crawler rule against the live index on its own
interval and keeps the matches in a rolling in-memory results buffer:
- one timer per rule id, job id "rule:<id>"
- one result per (rule_id, item_id), refreshed on every repeat match
- results older than the retention window are purged on every check

A failed check is logged and the rule keeps its timer.
"""

import uuid
import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import CrawlerConfig, get_crawler_config
from .db import ItemStore, RuleRepository
from .errors import ConfigurationError
from .models import CrawlerRule, ItemRecord, StoredResult, to_iso, utc_now
from .notifications import LoggingNotifier, Notifier
from .rule_matching import filter_matches

logger = logging.getLogger(__name__)


def rule_job_id(rule_id: str) -> str:
    return f"rule:{rule_id}"


class RuleEngine:
    """
    Runs crawler rules against the item store.

    Usage:
        engine = RuleEngine(store, persist_rules=True)
        engine.start()
        engine.add_rule(CrawlerRule(id="r1", name="Cheap chairs", search_query="chair", max_bid_price=10))
        results = engine.get_stored_results("r1")
    """

    def __init__(
        self,
        store: ItemStore,
        notifier: Optional[Notifier] = None,
        config: Optional[CrawlerConfig] = None,
        persist_rules: bool = False,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        if persist_rules and not isinstance(store, RuleRepository):
            raise ConfigurationError("persist_rules requires a store that can save rules")

        self.store = store
        self.notifier = notifier or LoggingNotifier()
        self.config = config or get_crawler_config()
        self.persist_rules = persist_rules

        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._running = False
        self._rules: dict[str, CrawlerRule] = {}
        self._results: dict[tuple[str, str], StoredResult] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """
        Load persisted rules and schedule every active rule.

        Must be called from a running event loop.
        """
        if self._running:
            return

        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone="UTC")
        if self._owns_scheduler and not self._scheduler.running:
            self._scheduler.start()
        self._running = True

        if self.persist_rules:
            for rule in self.store.list_rules(active_only=True):
                if rule.id not in self._rules:
                    self._rules[rule.id] = rule

        for rule in self.get_active_rules():
            self._schedule(rule)

        logger.info(f"Rule engine started with {len(self.get_active_rules())} active rules")

    def stop(self) -> None:
        """Cancel every rule timer and forget the in-memory rules."""
        for rule_id in list(self._rules):
            self._unschedule(rule_id)
        self._rules.clear()
        self._running = False

        if self._owns_scheduler and self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        logger.info("Rule engine stopped")

    def _schedule(self, rule: CrawlerRule) -> None:
        self._scheduler.add_job(
            self._run_rule_check,
            trigger=IntervalTrigger(minutes=rule.check_interval_minutes),
            args=[rule.id],
            id=rule_job_id(rule.id),
            name=f"Check rule {rule.name}",
            next_run_time=utc_now(),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.debug(f"Scheduled rule {rule.id} every {rule.check_interval_minutes} min")

    def _unschedule(self, rule_id: str) -> None:
        if self._scheduler is None:
            return
        job_id = rule_job_id(rule_id)
        if self._scheduler.get_job(job_id) is not None:
            self._scheduler.remove_job(job_id)

    def scheduled_rule_ids(self) -> list[str]:
        """Rule ids that currently own a timer."""
        if self._scheduler is None:
            return []
        prefix = rule_job_id("")
        return [job.id[len(prefix):] for job in self._scheduler.get_jobs() if job.id.startswith(prefix)]

    # =========================================================================
    # RULE MANAGEMENT
    # =========================================================================

    def add_rule(self, rule: CrawlerRule) -> CrawlerRule:
        """
        Register a new rule and, if the engine is running, start its timer.

        Raises:
            ConfigurationError: the rule is invalid or its id is taken
        """
        rule.validate()
        if rule.id in self._rules:
            raise ConfigurationError(f"Rule {rule.id} already exists, use update_rule")

        self._rules[rule.id] = rule
        if self.persist_rules:
            self.store.save_rule(rule)
        if self._running and rule.is_active:
            self._schedule(rule)

        logger.info(f"Added rule {rule.id} ({rule.name})")
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        """Cancel the rule's timer, then forget it."""
        self._unschedule(rule_id)
        removed = self._rules.pop(rule_id, None) is not None

        if self.persist_rules:
            removed = self.store.delete_rule(rule_id) or removed
        if removed:
            logger.info(f"Removed rule {rule_id}")
        return removed

    def update_rule(self, rule: CrawlerRule) -> CrawlerRule:
        """
        Replace a rule: remove it, then add the new definition.

        The new definition is validated before anything is removed.
        """
        rule.validate()
        existing = self._rules.get(rule.id)
        if existing is None:
            raise ConfigurationError(f"Rule {rule.id} does not exist")

        rule.created_at = existing.created_at
        rule.updated_at = to_iso(utc_now())

        self.remove_rule(rule.id)
        return self.add_rule(rule)

    def get_rule(self, rule_id: str) -> Optional[CrawlerRule]:
        return self._rules.get(rule_id)

    def get_active_rules(self) -> list[CrawlerRule]:
        return [rule for rule in self._rules.values() if rule.is_active]

    # =========================================================================
    # CHECKS
    # =========================================================================

    async def _run_rule_check(self, rule_id: str) -> None:
        """Timer entry point: failures are logged, the timer stays."""
        rule = self._rules.get(rule_id)
        if rule is None:
            return
        try:
            await self.check_rule(rule)
        except Exception as e:
            logger.error(f"Rule {rule.id} ({rule.name}) check failed: {e}")

    async def check_rule(self, rule: CrawlerRule, now: Optional[datetime] = None) -> list[StoredResult]:
        """
        Check one rule against the whole active index.

        Returns:
            The results recorded by this check
        """
        now = now or utc_now()
        items = self._search_all(rule.search_query)
        matches = filter_matches(items, rule, now)

        recorded = []
        new_count = 0
        for item, minutes_left in matches:
            result, is_new = self._record_match(rule, item, minutes_left, now)
            recorded.append(result)
            if is_new:
                new_count += 1

        purged = self._purge_expired(now)

        rule.last_checked = to_iso(now)
        if self.persist_rules:
            self.store.mark_rule_checked(rule.id, now)

        logger.info(
            f"Rule {rule.id} ({rule.name}): {len(items)} candidates, {len(recorded)} matches "
            f"({new_count} new), {purged} expired results purged"
        )

        for result in recorded:
            try:
                await self.notifier.notify(result)
            except Exception as e:
                logger.error(f"Notifier failed for rule {rule.id} item {result.item.item_id}: {e}")

        return recorded

    def _search_all(self, query: str) -> list[ItemRecord]:
        """Every active item matching the query, across all result pages."""
        items = []
        page = 1
        while True:
            batch = self.store.search_items(query=query, page=page, limit=self.config.rule_search_page_size)
            items.extend(batch["items"])
            if not batch["items"] or len(items) >= batch["total"]:
                return items
            page += 1

    def _record_match(
        self, rule: CrawlerRule, item: ItemRecord, minutes_left: int, now: datetime
    ) -> tuple[StoredResult, bool]:
        key = (rule.id, item.item_id)
        existing = self._results.get(key)

        result = StoredResult(
            id=existing.id if existing else str(uuid.uuid4()),
            rule_id=rule.id,
            rule_name=rule.name,
            item=item,
            time_left_minutes=minutes_left,
            matched_at=now,
            is_tracked=existing.is_tracked if existing else False,
            is_watched=existing.is_watched if existing else False,
        )
        self._results[key] = result
        return result, existing is None

    def _purge_expired(self, now: datetime) -> int:
        cutoff = now - timedelta(hours=self.config.result_retention_hours)
        expired = [key for key, result in self._results.items() if result.matched_at < cutoff]
        for key in expired:
            del self._results[key]
        return len(expired)

    # =========================================================================
    # RESULTS
    # =========================================================================

    def get_stored_results(self, rule_id: Optional[str] = None) -> list[StoredResult]:
        """Buffered results, most recent match first."""
        results = [r for r in self._results.values() if rule_id is None or r.rule_id == rule_id]
        results.sort(key=lambda r: r.matched_at, reverse=True)
        return results

    def set_result_flags(
        self,
        rule_id: str,
        item_id: str,
        is_tracked: Optional[bool] = None,
        is_watched: Optional[bool] = None,
    ) -> Optional[StoredResult]:
        """Mark a result tracked and/or watched. Returns None if it is not buffered."""
        result = self._results.get((rule_id, item_id))
        if result is None:
            return None
        if is_tracked is not None:
            result.is_tracked = is_tracked
        if is_watched is not None:
            result.is_watched = is_watched
        return result
