"""Threat signal gathering.

Collects geolocation, reputation and activity signals for an IP. Every
external lookup is independently fallible and bounded by a timeout; a failed
lookup leaves its field empty and is noted in ``ThreatSignals.errors`` so
the scorers can work with whatever partial data is available.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ip_risk_shield.activity import ActivityTracker
from ip_risk_shield.cache import TTLCache
from ip_risk_shield.config import SettingsManager
from ip_risk_shield.models import GeoLocation, ReputationReport, ThreatSignals
from ip_risk_shield.providers import GeolocationProvider, ReputationProvider

logger = logging.getLogger(__name__)


class ThreatSignalGatherer:
    """Aggregates threat signals from providers and the activity tracker."""

    def __init__(
        self,
        activity_tracker: ActivityTracker,
        geolocation_provider: Optional[GeolocationProvider] = None,
        reputation_providers: Optional[Sequence[ReputationProvider]] = None,
        settings: Optional[SettingsManager] = None,
    ):
        self.activity_tracker = activity_tracker
        self.geolocation_provider = geolocation_provider
        self.reputation_providers: List[ReputationProvider] = list(reputation_providers or [])
        self._settings = settings or SettingsManager()
        self._reputation_cache: TTLCache[Tuple[Optional[ReputationReport], List[str]]] = TTLCache(
            default_ttl=self._settings.settings.reputation_cache_ttl
        )

    async def gather(self, ip: str, context: Optional[Dict[str, Any]] = None) -> ThreatSignals:
        """Collect all signals for an IP. Never raises for provider failures."""
        signals = ThreatSignals(ip=ip, context=dict(context or {}))
        signals.activity = self.activity_tracker.patterns(ip)

        location_result, reputation_result = await asyncio.gather(
            self._lookup_location(ip),
            self._lookup_reputation(ip),
        )

        signals.location, location_errors = location_result
        signals.reputation, reputation_errors = reputation_result
        signals.errors.extend(location_errors)
        signals.errors.extend(reputation_errors)

        if signals.errors:
            logger.warning(f"Partial threat signals for {ip}: {'; '.join(signals.errors)}")
        return signals

    async def _lookup_location(self, ip: str) -> Tuple[Optional[GeoLocation], List[str]]:
        if self.geolocation_provider is None:
            return None, []
        try:
            location = await asyncio.wait_for(
                self.geolocation_provider.lookup(ip),
                timeout=self._settings.settings.provider_timeout,
            )
            return location, []
        except asyncio.TimeoutError:
            return None, [f"{self.geolocation_provider.name}: timed out"]
        except Exception as e:
            logger.debug(f"Geolocation lookup failed for {ip}: {e}")
            return None, [f"{self.geolocation_provider.name}: {e}"]

    async def _lookup_reputation(self, ip: str) -> Tuple[Optional[ReputationReport], List[str]]:
        if not self.reputation_providers:
            return None, []

        cached = self._reputation_cache.get(ip)
        if cached is not None:
            return cached

        results = await asyncio.gather(
            *(self._query_provider(provider, ip) for provider in self.reputation_providers)
        )

        reports = [report for report, _ in results if report is not None]
        errors = [error for _, error in results if error is not None]
        merged = self._merge_reports(reports)

        # Only fully successful lookups are cached so failures are retried next run
        if not errors:
            self._reputation_cache.put(
                ip, (merged, []), self._settings.settings.reputation_cache_ttl
            )
        return merged, errors

    async def _query_provider(
        self, provider: ReputationProvider, ip: str
    ) -> Tuple[Optional[ReputationReport], Optional[str]]:
        try:
            report = await asyncio.wait_for(
                provider.lookup(ip), timeout=self._settings.settings.provider_timeout
            )
            return report, None
        except asyncio.TimeoutError:
            return None, f"{provider.name}: timed out"
        except Exception as e:
            logger.debug(f"Reputation lookup via {provider.name} failed for {ip}: {e}")
            return None, f"{provider.name}: {e}"

    @staticmethod
    def _merge_reports(reports: List[ReputationReport]) -> Optional[ReputationReport]:
        if not reports:
            return None
        strongest = max(reports, key=lambda report: report.risk_score)
        indicators: List[str] = []
        sources: List[str] = []
        for report in reports:
            indicators.extend(i for i in report.indicators if i not in indicators)
            sources.extend(s for s in report.sources if s not in sources)
        return ReputationReport(
            risk_score=strongest.risk_score,
            category=strongest.category,
            indicators=indicators,
            sources=sources,
        )

    def clear_reputation_cache(self) -> None:
        self._reputation_cache.clear()

    async def refresh_feeds(self) -> Dict[str, int]:
        """Bust the reputation cache and re-pull every refreshable provider.

        Each provider is isolated: a failing refresh is logged and reported as
        ``-1`` without affecting the others.
        """
        self.clear_reputation_cache()
        results: Dict[str, int] = {}
        for provider in self.reputation_providers:
            if not provider.supports_refresh:
                continue
            try:
                results[provider.name] = await provider.refresh()
            except Exception as e:
                logger.error(f"Threat feed refresh failed for {provider.name}: {e}")
                results[provider.name] = -1
        return results

    def cache_stats(self) -> Dict[str, Any]:
        return self._reputation_cache.stats()
