"""
Sync controller: pull lifelogs from the provider into the store.

Three modes, chosen from stored state:
- BOOTSTRAP: nothing synced yet; fetch a bounded recent window
- INCREMENTAL: fetch from the last seen update minus a backfill margin,
  so late edits to recent entries are picked up
- FULL_REFRESH: fetch everything, on explicit request

Every write is an upsert, so overlapping windows and repeated runs leave
the store unchanged.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from .alerts import Alerter, NullAlerter, format_stale_alert
from .config import StoreConfig
from .errors import AuthConfigurationError, PartialBatchFailure, log_exception
from .limitless import paginate
from .normalize import lifelog_to_entry, lifelog_to_segments
from .store import LifelogStore
from .types import SyncStats, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

LAST_UPDATED_KEY = "lifelog:lastUpdatedAt"
LAST_SYNC_KEY = "lifelog:lastSyncedAt"
LAST_STALE_ALERT_KEY = "lifelog:lastStaleAlertAt"


class SyncMode(str, Enum):
    BOOTSTRAP = "bootstrap"
    INCREMENTAL = "incremental"
    FULL_REFRESH = "full_refresh"
    DISABLED = "disabled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncController:
    """
    Runs sync passes against a store.

    Args:
        store: Lifelog store (schema already initialized)
        client_factory: Zero-arg callable returning a provider client with
            fetch_page(). Raises AuthConfigurationError when the credential
            is missing.
        config: Store configuration (sync tuning and flags)
        alerter: Where staleness alerts go
        clock: Returns the current aware datetime, injectable for tests
    """

    def __init__(
        self,
        store: LifelogStore,
        client_factory: Callable[[], Any],
        config: StoreConfig,
        alerter: Optional[Alerter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._client_factory = client_factory
        self._config = config
        self._alerter = alerter or NullAlerter()
        self._clock = clock or _utcnow

    def last_synced_at(self) -> Optional[str]:
        return self._store.get_state(LAST_SYNC_KEY)

    def last_updated_at(self) -> Optional[str]:
        return self._store.get_state(LAST_UPDATED_KEY)

    def select_mode(self, full_refresh: bool = False) -> SyncMode:
        if self._config.flags.sync_disabled:
            return SyncMode.DISABLED
        if full_refresh:
            return SyncMode.FULL_REFRESH
        if self.last_synced_at() is None or self._store.count_entries() == 0:
            return SyncMode.BOOTSTRAP
        return SyncMode.INCREMENTAL

    def start_for(self, mode: SyncMode) -> Optional[str]:
        """Lower bound for the fetch window, or None for unbounded."""
        if mode in (SyncMode.FULL_REFRESH, SyncMode.DISABLED):
            return None
        now = self._clock()
        bootstrap_start = now - timedelta(days=self._config.sync.bootstrap_days)
        if mode == SyncMode.BOOTSTRAP:
            return format_timestamp(bootstrap_start)

        since = parse_timestamp(self.last_updated_at())
        if since is None:
            logger.info("No usable %s; using the bootstrap window", LAST_UPDATED_KEY)
            return format_timestamp(bootstrap_start)
        return format_timestamp(since - timedelta(hours=self._config.sync.backfill_hours))

    def sync(self, full_refresh: bool = False) -> SyncStats:
        """
        Run one sync pass.

        Fetch errors abort the pass and propagate; no state is written in
        that case, so the next pass starts from the same point. Failures
        persisting a single entry are logged and the pass continues.
        """
        mode = self.select_mode(full_refresh)
        stats = SyncStats(mode=mode.value)
        if mode == SyncMode.DISABLED:
            logger.info("Limitless sync disabled by flag; skipping fetch")
            stats.skipped_reason = "disabled"
            return stats

        try:
            client = self._client_factory()
        except AuthConfigurationError as e:
            logger.warning("Skipping Limitless sync: %s", e)
            stats.skipped_reason = "missing-credential"
            return stats

        start = self.start_for(mode)
        logger.info("Sync starting: mode=%s start=%s", mode.value, start or "-")

        last_updated: Optional[datetime] = None
        try:
            for page in paginate(
                client.fetch_page, start=start, limit=self._config.limitless.page_limit
            ):
                stats.pages += 1
                for item in page.items:
                    updated = self._persist(item, stats)
                    if updated is not None and (last_updated is None or updated > last_updated):
                        last_updated = updated
                        stats.last_updated_at = item.get("updatedAt") or format_timestamp(updated)
        finally:
            close = getattr(client, "close", None)
            if close is not None:
                close()

        if stats.last_updated_at:
            self._store.set_state(LAST_UPDATED_KEY, stats.last_updated_at)
        self._store.set_state(LAST_SYNC_KEY, format_timestamp(self._clock()))

        logger.info(
            "Sync done: mode=%s processed=%d pages=%d segment_failures=%d failed=%d",
            mode.value, stats.processed, stats.pages,
            len(stats.segment_failures), len(stats.failed),
        )
        return stats

    def _persist(self, item: dict[str, Any], stats: SyncStats) -> Optional[datetime]:
        """Upsert one lifelog and its segments; returns its update time."""
        if not isinstance(item, dict):
            logger.warning("Skipping malformed lifelog item: %r", item)
            return None
        entry_id = item.get("id")
        if not entry_id:
            logger.warning("Skipping lifelog without an id")
            return None

        try:
            entry = lifelog_to_entry(item, self._config.limitless.timezone)
            self._store.upsert_entry(entry)
        except Exception as e:
            logger.error("Failed to store entry %s: %s", entry_id, e)
            log_exception(e, f"sync entry {entry_id}")
            stats.failed.append(entry_id)
            return None

        try:
            segments = lifelog_to_segments(item)
            if segments:
                batches = self._store.replace_segments(
                    entry_id,
                    segments,
                    batch_size=self._config.sync.segment_batch_size,
                    atomic=self._config.sync.atomic_segments,
                )
                logger.debug("Entry %s: %d segments in %d batches", entry_id, len(segments), batches)
            else:
                logger.warning("No segments for entry %s", entry_id)
        except PartialBatchFailure as e:
            logger.error("%s", e)
            stats.segment_failures.append(entry_id)
        except Exception as e:
            logger.error("Failed to store segments for %s: %s", entry_id, e)
            log_exception(e, f"sync segments {entry_id}")
            stats.segment_failures.append(entry_id)

        stats.processed += 1
        return parse_timestamp(entry.updated_at)

    def check_staleness(self, now: Optional[datetime] = None) -> bool:
        """
        Alert when no new data has arrived for stale_after_hours.

        One alert per alert_interval_hours while the episode lasts. Data
        arriving after the last alert starts a fresh episode.

        Returns:
            True if an alert was posted
        """
        if self._config.flags.sync_disabled:
            return False
        now = now or self._clock()
        last = parse_timestamp(self.last_updated_at()) or parse_timestamp(self.last_synced_at())
        if last is None:
            return False

        threshold = timedelta(hours=self._config.sync.stale_after_hours)
        if now - last <= threshold:
            return False

        last_alert = parse_timestamp(self._store.get_state(LAST_STALE_ALERT_KEY))
        interval = timedelta(hours=self._config.sync.alert_interval_hours)
        if last_alert is not None and last_alert >= last and now - last_alert < interval:
            logger.debug("Data stale since %s; alerted at %s", last, last_alert)
            return False

        logger.warning("Lifelog data stale: last update %s", format_timestamp(last))
        posted = self._alerter.post_message(
            format_stale_alert(last, self._config.sync.stale_after_hours)
        )
        self._store.set_state(LAST_STALE_ALERT_KEY, format_timestamp(now))
        return posted
