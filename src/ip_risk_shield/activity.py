"""Per-IP activity tracking.

Keeps a rolling window of requests, failures, user-agent diversity and
endpoint diversity for every IP seen, and decides when that activity is
interesting enough to warrant a fresh risk analysis.
"""

import logging
from copy import deepcopy
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

from ip_risk_shield.concurrency import StripedLock
from ip_risk_shield.config import EngineSettings, SettingsManager
from ip_risk_shield.models import (
    ActivityEvent,
    ActivityPatterns,
    ActivityRecord,
    utcnow,
    validate_ip,
)

logger = logging.getLogger(__name__)

ADMIN_PROBE_PREFIXES = ("/admin", "/wp-admin", "/wp-login", "/phpmyadmin", "/.env", "/.git")


class ActivityTracker:
    """Thread-safe rolling activity window keyed by IP."""

    def __init__(self, settings: Optional[SettingsManager] = None, stripes: int = 64):
        self._settings = settings or SettingsManager()
        self._locks = StripedLock(stripes)
        self._shards: List[Dict[str, ActivityRecord]] = [{} for _ in range(stripes)]

    @property
    def settings(self) -> EngineSettings:
        return self._settings.settings

    def record(self, ip: str, event: Union[ActivityEvent, Dict, None] = None) -> bool:
        """Record one event for an IP and report whether analysis should be scheduled."""
        ip = validate_ip(ip)
        if event is None:
            event = ActivityEvent()
        elif isinstance(event, dict):
            event = ActivityEvent.from_dict(event)

        settings = self.settings
        index = self._locks.index(ip)
        with self._locks.at(index):
            shard = self._shards[index]
            record = shard.get(ip)
            if record is None:
                record = shard[ip] = ActivityRecord(
                    ip=ip, event_cap=settings.activity_record_cap, first_seen=event.timestamp
                )

            record.request_count += 1
            record.last_seen = event.timestamp
            if event.failed:
                record.failed_attempts += 1
            if event.user_agent:
                record.user_agents.add(event.user_agent)
            if event.endpoint:
                record.endpoints.add(event.endpoint)
            record.events.append(event)

            return self._should_trigger(record, settings)

    def _should_trigger(self, record: ActivityRecord, settings: EngineSettings) -> bool:
        return (
            record.request_count % settings.analysis_batch_size == 0
            or record.failed_attempts >= settings.failed_attempts_trigger
            or len(record.user_agents) >= settings.user_agent_trigger
        )

    def get(self, ip: str) -> Optional[ActivityRecord]:
        """Return a snapshot of the activity record for an IP."""
        ip = validate_ip(ip)
        index = self._locks.index(ip)
        with self._locks.at(index):
            record = self._shards[index].get(ip)
            return deepcopy(record) if record else None

    def patterns(self, ip: str, now: Optional[datetime] = None) -> ActivityPatterns:
        """Summarize the recent behaviour of an IP."""
        ip = validate_ip(ip)
        now = now or utcnow()
        settings = self.settings
        minute_ago = now - timedelta(minutes=1)
        hour_ago = now - timedelta(hours=1)

        index = self._locks.index(ip)
        with self._locks.at(index):
            record = self._shards[index].get(ip)
            if record is None:
                return ActivityPatterns()

            request_rate = sum(1 for event in record.events if event.timestamp >= minute_ago)
            failed_recent = sum(
                1 for event in record.events if event.failed and event.timestamp >= hour_ago
            )
            patterns = ActivityPatterns(
                request_rate=request_rate,
                failed_attempts=failed_recent,
                total_requests=record.request_count,
                unique_user_agents=len(record.user_agents),
                endpoints_accessed=len(record.endpoints),
                last_activity=record.last_seen,
                is_new=record.request_count <= 1,
            )
            endpoints = list(record.endpoints)

        if patterns.request_rate > settings.max_requests_per_minute:
            patterns.suspicious_patterns.append("high_request_rate")
        if patterns.failed_attempts > settings.max_failed_attempts_per_hour:
            patterns.suspicious_patterns.append("multiple_failures")
        if patterns.unique_user_agents > 2 * settings.user_agent_trigger:
            patterns.suspicious_patterns.append("user_agent_rotation")
        if any(endpoint.lower().startswith(ADMIN_PROBE_PREFIXES) for endpoint in endpoints):
            patterns.suspicious_patterns.append("admin_scanning")
        return patterns

    def reap(self, idle_seconds: Optional[float] = None, now: Optional[datetime] = None) -> int:
        """Drop records that have been idle for longer than ``idle_seconds``."""
        idle_seconds = idle_seconds if idle_seconds is not None else self.settings.activity_idle_ttl
        cutoff = (now or utcnow()) - timedelta(seconds=idle_seconds)
        removed = 0

        for index, shard in enumerate(self._shards):
            with self._locks.at(index):
                stale = [ip for ip, record in shard.items() if record.last_seen and record.last_seen < cutoff]
                for ip in stale:
                    del shard[ip]
                removed += len(stale)

        if removed:
            logger.info(f"Reaped {removed} inactive activity records")
        return removed

    def reset(self, ip: str) -> bool:
        """Forget the activity of a single IP."""
        ip = validate_ip(ip)
        index = self._locks.index(ip)
        with self._locks.at(index):
            return self._shards[index].pop(ip, None) is not None

    def __len__(self) -> int:
        return sum(len(shard) for shard in self._shards)
