"""
Lifelog facade: one object wiring config, store, provider client,
inference providers, sync controller and analysis orchestrator.

Entry points mirror how the pipeline is triggered:
- run_scheduled(): the periodic timer (sync, staleness check, analysis)
- refresh_on_request(): an interactive request that wants fresh data
  without waiting on network calls it doesn't need
- sync() / analyze(): direct calls, used by the CLI
"""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from .alerts import Alerter, NullAlerter, SlackAlerter, format_error_alert
from .analysis import LAST_ANALYZED_KEY, AnalysisOrchestrator, AnalysisResult
from .background import BackgroundRunner
from .config import StoreConfig, get_default_store_path, load_or_create_config
from .errors import log_exception
from .limitless import LimitlessClient
from .providers.base import InferenceProvider, get_registry
from .store import LifelogStore
from .sync import SyncController, SyncMode
from .types import AnalysisRecord, LifelogEntry, SyncStats, parse_timestamp

logger = logging.getLogger(__name__)

# Analysis batch sizes for the on-demand refresh paths
BOOTSTRAP_ANALYSIS_LIMIT = 5
STALE_ANALYSIS_LIMIT = 3
FRESH_ANALYSIS_LIMIT = 2


@dataclass
class RefreshDecision:
    """What refresh_on_request() did, and handles to any background work."""
    action: str
    sync: Optional[SyncStats] = None
    futures: list[Future] = field(default_factory=list)


class Lifelog:
    """
    Lifelog sync and analysis service.

    Example:
        ll = Lifelog()
        stats = ll.sync()
        analyzed = ll.analyze(limit=2)
        ll.close()
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        store: Optional[LifelogStore] = None,
        client_factory: Optional[Callable[[], Any]] = None,
        primary: Optional[InferenceProvider] = None,
        secondary: Optional[InferenceProvider] = None,
        alerter: Optional[Alerter] = None,
        runner: Optional[BackgroundRunner] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Open (and if needed create) a lifelog store.

        Args:
            store_path: Store directory. Uses LIFELOG_STORE_PATH or ~/.lifelog if not given.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            store: Injected store (skips opening the default database).
            client_factory: Builds the provider client. Defaults to a
                LimitlessClient from config and LIMITLESS_API_KEY.
            primary: Injected primary inference provider.
            secondary: Injected fallback inference provider.
            alerter: Injected alerter. Defaults to Slack when a bot token is set.
            runner: Background runner for on-demand refreshes.
            sleep: Delay between analysis calls.
            clock: Current time source.
        """
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).resolve() if store_path is not None else get_default_store_path()
            self._config = load_or_create_config(path)
        self._store_path = self._config.path

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        self._store = store if store is not None else LifelogStore(self._config.db_path)
        self._owns_runner = runner is None
        self._runner = runner or BackgroundRunner()
        self._alerter = alerter or self._default_alerter()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

        self._controller = SyncController(
            self._store,
            client_factory or self._default_client,
            self._config,
            alerter=self._alerter,
            clock=self._clock,
        )

        # Providers are created on first analysis so read-only use needs no credentials
        self._primary = primary
        self._secondary = secondary
        self._orchestrator: Optional[AnalysisOrchestrator] = None
        self._provider_init_lock = threading.Lock()

        self.initialize()

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------

    def _default_client(self) -> LimitlessClient:
        limitless = self._config.limitless
        return LimitlessClient(
            self._config.flags.limitless_api_key,
            api_url=limitless.api_url,
            timeout=limitless.timeout,
            timezone=limitless.timezone,
        )

    def _default_alerter(self) -> Alerter:
        flags = self._config.flags
        if flags.slack_token:
            return SlackAlerter(flags.slack_token, flags.slack_channel or self._config.alerts.channel)
        return NullAlerter()

    def _create_provider(self, role: str) -> Optional[InferenceProvider]:
        provider_config = getattr(self._config, role)
        if provider_config is None:
            return None
        try:
            return get_registry().create_inference(provider_config.name, provider_config.params)
        except (ValueError, RuntimeError) as e:
            logger.warning("Inference provider %s (%s) unavailable: %s", provider_config.name, role, e)
            return None

    def _get_orchestrator(self) -> AnalysisOrchestrator:
        """Get the orchestrator, creating providers lazily on first use."""
        if self._orchestrator is not None:
            return self._orchestrator
        with self._provider_init_lock:
            if self._orchestrator is None:
                disabled = self._config.flags.disable_inference
                if not disabled:
                    if self._primary is None:
                        self._primary = self._create_provider("primary")
                    if self._secondary is None:
                        self._secondary = self._create_provider("secondary")
                self._orchestrator = AnalysisOrchestrator(
                    self._store,
                    self._primary,
                    self._secondary,
                    self._config.analysis,
                    disabled=disabled,
                    sleep=self._sleep,
                )
        return self._orchestrator

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    @property
    def store(self) -> LifelogStore:
        return self._store

    @property
    def config(self) -> StoreConfig:
        return self._config

    def initialize(self) -> None:
        """Create the schema unless the database already has it."""
        if not self._store.schema_ready():
            self._store.initialize()

    def sync(self, full_refresh: Optional[bool] = None) -> SyncStats:
        """Run one sync pass. full_refresh defaults to LIFELOG_FULL_REFRESH."""
        if full_refresh is None:
            full_refresh = self._config.flags.full_refresh
        return self._controller.sync(full_refresh=full_refresh)

    def analyze(
        self,
        limit: Optional[int] = None,
        entry_ids: Optional[Sequence[str]] = None,
        force: bool = False,
    ) -> list[str]:
        """Analyze stale entries; returns the ids that were stored."""
        return self._get_orchestrator().analyze(limit=limit, entry_ids=entry_ids, force=force)

    def analyze_run(
        self,
        limit: Optional[int] = None,
        entry_ids: Optional[Sequence[str]] = None,
        force: bool = False,
    ) -> AnalysisResult:
        return self._get_orchestrator().run(limit=limit, entry_ids=entry_ids, force=force)

    def check_staleness(self) -> bool:
        return self._controller.check_staleness()

    def run_scheduled(self) -> dict[str, Any]:
        """
        Timer entry point: sync, check staleness, analyze.

        Each step runs even if an earlier one failed. Failures are logged,
        written to the error log and posted as alerts.
        """
        summary: dict[str, Any] = {}

        try:
            summary["sync"] = self.sync().to_dict()
        except Exception as e:
            self._report_failure(e, "sync")
            summary["sync_error"] = str(e)

        summary["stale_alert"] = self._controller.check_staleness()

        try:
            summary["analysis"] = self.analyze_run().to_dict()
        except Exception as e:
            self._report_failure(e, "analysis")
            summary["analysis_error"] = str(e)

        return summary

    def _report_failure(self, exc: Exception, step: str) -> None:
        logger.error("Scheduled %s failed: %s", step, exc)
        log_exception(exc, f"scheduled {step}")
        self._alerter.post_message(format_error_alert(exc, step))

    def _sync_is_stale(self) -> bool:
        last = parse_timestamp(self._controller.last_synced_at())
        if last is None:
            return True
        threshold = timedelta(minutes=self._config.sync.refresh_after_minutes)
        return self._clock() - last > threshold

    def _sync_then_analyze(self, limit: int) -> list[str]:
        self.sync()
        return self.analyze(limit=limit)

    def refresh_on_request(self) -> RefreshDecision:
        """
        Make data fresh enough for an interactive view.

        - Nothing synced yet: sync now (the caller waits), then analyze
          up to 5 entries in the background.
        - Last sync older than refresh_after_minutes: sync and analyze up
          to 3 entries in the background.
        - Otherwise: analyze up to 2 entries in the background.
        """
        mode = self._controller.select_mode()
        if mode == SyncMode.DISABLED:
            logger.info("Sync disabled; on-demand refresh skipped")
            return RefreshDecision(action="skipped")

        if mode == SyncMode.BOOTSTRAP:
            stats = self.sync(full_refresh=False)
            future = self._runner.submit(
                self.analyze, limit=BOOTSTRAP_ANALYSIS_LIMIT, name="bootstrap-analysis"
            )
            return RefreshDecision(action="bootstrap", sync=stats, futures=[future])

        if self._sync_is_stale():
            future = self._runner.submit(
                self._sync_then_analyze, STALE_ANALYSIS_LIMIT, name="refresh-sync"
            )
            return RefreshDecision(action="sync", futures=[future])

        future = self._runner.submit(
            self.analyze, limit=FRESH_ANALYSIS_LIMIT, name="refresh-analysis"
        )
        return RefreshDecision(action="analyze", futures=[future])

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, entry_id: str) -> Optional[LifelogEntry]:
        return self._store.get_entry(entry_id)

    def get_analysis(self, entry_id: str) -> Optional[AnalysisRecord]:
        return self._store.get_analysis(entry_id, self._config.analysis.version)

    def list_entries(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[LifelogEntry]:
        return self._store.list_entries(start, end, limit)

    def status(self) -> dict[str, Any]:
        flags = self._config.flags
        return {
            "store": str(self._store_path),
            "entries": self._store.count_entries(),
            "segments": self._store.count_segments(),
            "analyses": self._store.count_analyses(self._config.analysis.version),
            "analysis_version": self._config.analysis.version,
            "last_synced_at": self._controller.last_synced_at(),
            "last_updated_at": self._controller.last_updated_at(),
            "last_analyzed_at": self._store.get_state(LAST_ANALYZED_KEY),
            "next_sync_mode": self._controller.select_mode().value,
            "primary": self._config.primary.name if self._config.primary else None,
            "secondary": self._config.secondary.name if self._config.secondary else None,
            "sync_disabled": flags.sync_disabled,
            "inference_disabled": flags.disable_inference,
        }

    def close(self) -> None:
        """Wait for background work, then close the store."""
        if self._owns_runner:
            self._runner.shutdown(wait=True)
        for provider in (self._primary, self._secondary):
            close = getattr(provider, "close", None)
            if close is not None:
                close()
        self._store.close()

        # Remove ops log handler to avoid handler accumulation
        if self._ops_log_handler is not None:
            logging.getLogger("lifelog").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
