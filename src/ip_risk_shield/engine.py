"""IP risk engine facade.

``IPRiskEngine`` wires the activity tracker, signal gatherer, decision cache,
block store, risk analyzer and maintenance scheduler together and exposes the
operations callers use:

- ``record_activity``: fire-and-forget bookkeeping on the request path
- ``analyze_ip``: on-demand risk analysis
- ``is_blocked`` / ``block_ip`` / ``unblock_ip``: enforcement queries and
  manual overrides
- ``get_status`` / ``update_settings``: operations surface

Example:
    engine = await create_ip_risk_engine(config_file="ip_risk.yaml")
    await engine.start()

    engine.record_activity("198.51.100.23", {"failed": True, "endpoint": "/login"})
    decision = await engine.analyze_ip("198.51.100.23")
"""

import asyncio
import concurrent.futures
import logging
from datetime import timedelta
from threading import Lock
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Set, Union

from ip_risk_shield.activity import ActivityTracker
from ip_risk_shield.analyzer import RetryPolicy, RiskAnalyzer
from ip_risk_shield.block_store import BlockStore
from ip_risk_shield.cache import DecisionCache
from ip_risk_shield.config import ConfigChangeEvent, EngineSettings, SettingsManager, create_settings_manager
from ip_risk_shield.exceptions import InvalidStateTransition
from ip_risk_shield.maintenance import MaintenanceScheduler, build_blocking_report
from ip_risk_shield.models import (
    ActivityEvent,
    BlockRecord,
    Decision,
    HistoryAction,
    HistoryEntry,
    IPState,
    utcnow,
    validate_ip,
)
from ip_risk_shield.notifications import (
    FileReportSink,
    LoggingNotificationSink,
    LoggingReportSink,
    NotificationSink,
    ReportSink,
    WebhookNotificationSink,
)
from ip_risk_shield.providers import (
    AbuseIPDBReputationProvider,
    GeolocationProvider,
    IPApiGeolocationProvider,
    PlaintextFeedReputationProvider,
    ReputationProvider,
)
from ip_risk_shield.scoring import LLMRiskScorer, RiskScorer
from ip_risk_shield.signals import ThreatSignalGatherer
from ip_risk_shield.state import IPStateMachine
from ip_risk_shield.storage import BlockRepository, SQLiteBlockRepository

logger = logging.getLogger(__name__)

Pending = Union[asyncio.Task, concurrent.futures.Future]


class IPRiskEngine:
    """Automated IP risk scoring and blocking engine."""

    def __init__(
        self,
        settings: Optional[SettingsManager] = None,
        repository: Optional[BlockRepository] = None,
        geolocation_provider: Optional[GeolocationProvider] = None,
        reputation_providers: Optional[Sequence[ReputationProvider]] = None,
        primary_scorer: Optional[RiskScorer] = None,
        notification_sinks: Optional[Sequence[NotificationSink]] = None,
        report_sink: Optional[ReportSink] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings_manager = settings or SettingsManager()
        self.activity = ActivityTracker(self.settings_manager)
        self.decision_cache = DecisionCache(self.settings_manager)
        self.block_store = BlockStore(repository, self.settings_manager)
        self.state_machine = IPStateMachine()
        self.signal_gatherer = ThreatSignalGatherer(
            self.activity,
            geolocation_provider=geolocation_provider,
            reputation_providers=reputation_providers,
            settings=self.settings_manager,
        )
        self.analyzer = RiskAnalyzer(
            self.signal_gatherer,
            self.block_store,
            self.decision_cache,
            primary_scorer=primary_scorer,
            settings=self.settings_manager,
            state_machine=self.state_machine,
            retry_policy=retry_policy,
        )
        self.notification_sinks: List[NotificationSink] = list(notification_sinks or [LoggingNotificationSink()])
        self.report_sink: ReportSink = report_sink or LoggingReportSink()
        self.scheduler = MaintenanceScheduler()

        self._counters: Dict[str, int] = {
            "total_blocked": 0,
            "auto_blocked": 0,
            "manual_blocked": 0,
            "false_positives": 0,
        }
        self._counter_lock = Lock()
        self._pending: Set[Pending] = set()
        self._pending_lock = Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        for record in self._load_blocks():
            self.state_machine.transition(record.ip, IPState.BLOCKED)
        self.block_store.add_listener(self._on_block_transition)
        self.settings_manager.on_change(self._on_settings_change)
        self._register_jobs()

    @property
    def settings(self) -> EngineSettings:
        return self.settings_manager.settings

    def _load_blocks(self) -> List[BlockRecord]:
        self.block_store.load()
        return self.block_store.list_active()

    def _register_jobs(self) -> None:
        settings = self.settings
        self.scheduler.add_job("expire_blocks", self._expire_blocks, settings.expiry_sweep_interval)
        self.scheduler.add_job("refresh_threat_feeds", self._refresh_threat_feeds, settings.feed_refresh_interval)
        self.scheduler.add_job("emit_report", self._emit_report, settings.report_interval)
        self.scheduler.add_job("reap_activity", self._reap_activity, settings.activity_reap_interval)

    # Lifecycle

    async def start(self) -> None:
        """Bind to the running loop and start the maintenance jobs."""
        self._loop = asyncio.get_running_loop()
        await self.scheduler.start()
        logger.info("IP risk engine started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.settings_manager.stop_watching()
        await self.wait_for_pending()
        self._loop = None
        logger.info("IP risk engine stopped")

    async def __aenter__(self) -> "IPRiskEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # Entry points

    async def analyze_ip(self, ip: str, context: Optional[Dict[str, Any]] = None) -> Decision:
        """Return the current decision for an IP, analyzing it if needed."""
        return await self.analyzer.analyze(ip, context)

    def record_activity(self, ip: str, event: Union[ActivityEvent, Dict[str, Any], None] = None) -> None:
        """Record a request and schedule re-analysis when the activity warrants it.

        Never blocks on analysis; raises ``InvalidIPAddressError`` for bad input.
        """
        ip = validate_ip(ip)
        if isinstance(event, dict):
            event = ActivityEvent.from_dict(event)
        event = event or ActivityEvent()

        if not self.activity.record(ip, event):
            return

        # New evidence supersedes any cached verdict
        self.decision_cache.invalidate(ip)
        context = {key: value for key, value in event.to_context().items() if value is not None}
        self._spawn(self.analyzer.analyze(ip, context), f"analysis of {ip}")

    def is_blocked(self, ip: str) -> bool:
        return self.block_store.is_blocked(ip)

    def block_ip(
        self,
        ip: str,
        reason: str,
        duration: Optional[float] = None,
        permanent: bool = False,
        category: str = "manual",
    ) -> BlockRecord:
        """Manually block an IP; ``duration`` defaults to the temporary block duration."""
        ip = validate_ip(ip)
        now = utcnow()
        if permanent:
            expires_at = None
        else:
            seconds = duration if duration is not None else self.settings.temporary_block_duration
            expires_at = now + timedelta(seconds=seconds)

        record = BlockRecord(
            ip=ip,
            reason=reason,
            category=category,
            created_at=now,
            expires_at=expires_at,
            is_automatic=False,
            source="manual",
        )
        return self.block_store.block(record)

    def unblock_ip(self, ip: str, reason: str = "Manual unblock", false_positive: bool = False) -> bool:
        """Release a block. Idempotent: returns False if the IP was not blocked."""
        released = self.block_store.unblock(ip, reason)
        if released and false_positive:
            self._increment("false_positives")
        return released

    def update_settings(self, **changes: Any) -> EngineSettings:
        """Apply runtime configuration changes."""
        return self.settings_manager.update(**changes)

    async def run_job(self, name: str) -> Any:
        return await self.scheduler.run_job(name)

    def stats(self) -> Dict[str, int]:
        with self._counter_lock:
            stats = dict(self._counters)
        stats["review_queue"] = self.state_machine.count(IPState.UNDER_REVIEW)
        stats["fallback_decisions"] = self.analyzer.fallback_decisions
        stats["enforcement_failures"] = self.analyzer.enforcement_failures
        stats["analyses"] = self.analyzer.analyses
        return stats

    def get_status(self) -> Dict[str, Any]:
        """Configuration snapshot, statistics and cache sizes."""
        primary = self.analyzer.scorer.primary
        return {
            "running": self.scheduler.running,
            "settings": self.settings.model_dump(mode="json"),
            "stats": self.stats(),
            "cache_sizes": {
                "decisions": len(self.decision_cache),
                "activity": len(self.activity),
                "active_blocks": len(self.block_store),
                "reputation": self.signal_gatherer.cache_stats()["size"],
                "history": len(self.block_store.history()),
            },
            "scorer": {
                "primary": primary.name if primary else None,
                "circuit": self.analyzer.scorer.circuit.to_dict(),
            },
            "maintenance": self.scheduler.status(),
            "pending_analyses": len(self._pending),
        }

    # Background work

    def _spawn(self, coro: Awaitable[Any], description: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            pending: Pending = loop.create_task(coro)
        elif self._loop is not None and self._loop.is_running():
            pending = asyncio.run_coroutine_threadsafe(coro, self._loop)
        else:
            coro.close()
            logger.warning(f"No running event loop, skipped {description}")
            return

        with self._pending_lock:
            self._pending.add(pending)
        pending.add_done_callback(lambda done: self._finish(done, description))

    def _finish(self, done: Pending, description: str) -> None:
        with self._pending_lock:
            self._pending.discard(done)
        if done.cancelled():
            return
        error = done.exception()
        if error is not None:
            logger.error(f"Background {description} failed: {error}")

    async def wait_for_pending(self) -> None:
        """Wait until every scheduled analysis and notification has finished."""
        while True:
            with self._pending_lock:
                pending = list(self._pending)
            if not pending:
                return
            await asyncio.gather(
                *(p if isinstance(p, asyncio.Task) else asyncio.wrap_future(p) for p in pending),
                return_exceptions=True,
            )

    def _on_block_transition(self, entry: HistoryEntry, record: BlockRecord) -> None:
        self.decision_cache.invalidate(entry.ip)

        if entry.action == HistoryAction.BLOCKED:
            self._increment("total_blocked")
            self._increment("auto_blocked" if record.is_automatic else "manual_blocked")
            target = IPState.BLOCKED
        else:
            target = IPState.RELEASED
        try:
            self.state_machine.transition(entry.ip, target)
        except InvalidStateTransition as e:
            logger.warning(f"Block transition out of sync for {entry.ip}: {e.message}")

        for sink in self.notification_sinks:
            self._spawn(self._deliver(sink, entry, record), f"notification for {entry.ip}")

    async def _deliver(self, sink: NotificationSink, entry: HistoryEntry, record: BlockRecord) -> None:
        try:
            await sink.notify(entry, record)
        except Exception as e:
            logger.error(f"Notification sink {sink.__class__.__name__} failed for {entry.ip}: {e}")

    def _on_settings_change(self, events: List[ConfigChangeEvent]) -> None:
        # Cached decisions were mapped with the old policy
        self.decision_cache.clear()
        if any(event.key == "whitelist" for event in events):
            self.block_store.release_whitelisted()

    def _increment(self, counter: str) -> None:
        with self._counter_lock:
            self._counters[counter] += 1

    # Maintenance jobs

    async def _expire_blocks(self) -> int:
        expired = self.block_store.expire_stale()
        self.decision_cache.purge_expired()
        return expired

    async def _refresh_threat_feeds(self) -> Dict[str, int]:
        return await self.signal_gatherer.refresh_feeds()

    async def _emit_report(self) -> Dict[str, Any]:
        report = build_blocking_report(
            self.block_store,
            self.stats(),
            period=timedelta(seconds=self.settings.report_interval),
        )
        await self.report_sink.write(report)
        return report.to_dict()["summary"]

    async def _reap_activity(self) -> int:
        return self.activity.reap()


async def create_ip_risk_engine(
    config_file: Optional[str] = None,
    env_prefix: Optional[str] = "IPRISK_",
    db_path: Optional[str] = None,
    openai_api_key: Optional[str] = None,
    openai_model: str = "gpt-4",
    abuseipdb_api_key: Optional[str] = None,
    ip_api_key: Optional[str] = None,
    threat_feeds: Optional[Dict[str, str]] = None,
    webhook_url: Optional[str] = None,
    report_dir: Optional[str] = None,
    **overrides: Any,
) -> IPRiskEngine:
    """Build an engine with the reference adapters for whichever credentials are given."""
    settings = create_settings_manager(config_file, env_prefix, **overrides)
    await settings.load()
    if config_file:
        await settings.start_watching()

    repository = SQLiteBlockRepository(db_path, settings.settings.history_limit) if db_path else None

    reputation_providers: List[ReputationProvider] = []
    if abuseipdb_api_key:
        reputation_providers.append(AbuseIPDBReputationProvider(abuseipdb_api_key))
    if threat_feeds:
        reputation_providers.append(PlaintextFeedReputationProvider(threat_feeds))

    notification_sinks: List[NotificationSink] = [LoggingNotificationSink()]
    if webhook_url:
        notification_sinks.append(WebhookNotificationSink(webhook_url))

    return IPRiskEngine(
        settings=settings,
        repository=repository,
        geolocation_provider=IPApiGeolocationProvider(api_key=ip_api_key),
        reputation_providers=reputation_providers,
        primary_scorer=LLMRiskScorer(openai_api_key, model=openai_model) if openai_api_key else None,
        notification_sinks=notification_sinks,
        report_sink=FileReportSink(report_dir) if report_dir else LoggingReportSink(),
    )
