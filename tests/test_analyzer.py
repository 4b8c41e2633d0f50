"""Tests for the risk analysis pipeline."""

import asyncio
from unittest.mock import patch

import pytest

from ip_risk_shield.activity import ActivityTracker
from ip_risk_shield.analyzer import RetryPolicy, RiskAnalyzer
from ip_risk_shield.block_store import BlockStore
from ip_risk_shield.cache import DecisionCache
from ip_risk_shield.exceptions import InvalidIPAddressError, ScorerError, WhitelistedIPError
from ip_risk_shield.models import Action, GeoLocation, IPState, ReputationReport, ScoreResult, ThreatSignals
from ip_risk_shield.signals import ThreatSignalGatherer
from ip_risk_shield.state import IPStateMachine

from tests.mocks.ip_risk_mocks import (
    FakeClock,
    FlakyBlockRepository,
    MockGeolocationProvider,
    MockReputationProvider,
    MockRiskScorer,
    failed_login,
    make_settings,
)


def _analyzer(settings=None, locations=None, reports=None, primary_scorer=None,
              repository=None, clock=None):
    settings = settings or make_settings()
    tracker = ActivityTracker(settings)
    gatherer = ThreatSignalGatherer(
        tracker,
        geolocation_provider=MockGeolocationProvider(locations),
        reputation_providers=[MockReputationProvider(reports)],
        settings=settings,
    )
    cache_kwargs = {"clock": clock} if clock else {}
    return RiskAnalyzer(
        gatherer,
        BlockStore(repository or FlakyBlockRepository(), settings),
        DecisionCache(settings, **cache_kwargs),
        primary_scorer=primary_scorer,
        settings=settings,
        state_machine=IPStateMachine(),
    )


def _reputation(score: float, category: str = "malware") -> ReputationReport:
    return ReputationReport(risk_score=score, category=category, indicators=[f"{category} activity"])


class TestWhitelist:
    """Test whitelist short-circuit."""

    @pytest.mark.asyncio
    async def test_whitelisted_ip_always_allowed(self):
        ip = "198.51.100.9"
        analyzer = _analyzer(
            make_settings(whitelist=[ip], max_failed_attempts_per_hour=1),
            reports={ip: _reputation(100)},
        )
        for _ in range(50):
            analyzer.signal_gatherer.activity_tracker.record(ip, failed_login())

        decision = await analyzer.analyze(ip)

        assert decision.action == Action.ALLOW
        assert decision.risk_score == 0
        assert decision.reason == "whitelisted"
        assert analyzer.block_store.is_blocked(ip) is False
        assert analyzer.analyses == 0

    @pytest.mark.asyncio
    async def test_whitelisted_while_analysis_in_flight(self):
        ip = "203.0.113.50"
        settings = make_settings()
        analyzer = _analyzer(settings, reports={ip: _reputation(95)})
        analyzer.signal_gatherer.geolocation_provider.delay = 0.1

        pending = asyncio.ensure_future(analyzer.analyze(ip))
        await asyncio.sleep(0.02)
        settings.update(whitelist=["127.0.0.1", ip])
        decision = await pending

        assert decision.action == Action.ALLOW
        assert decision.reason == "whitelisted"
        assert analyzer.block_store.is_blocked(ip) is False
        assert analyzer.state_machine.get(ip) == IPState.UNKNOWN

    @pytest.mark.asyncio
    async def test_whitelisted_during_enforcement(self):
        ip = "203.0.113.51"
        analyzer = _analyzer(reports={ip: _reputation(95)})

        with patch.object(analyzer.block_store, "block", side_effect=WhitelistedIPError(ip)):
            decision = await analyzer.analyze(ip)

        assert decision.action == Action.ALLOW
        assert decision.scorer == "whitelist"
        assert analyzer.enforcement_failures == 0
        assert analyzer.decision_cache.get(ip) is None

    @pytest.mark.asyncio
    async def test_invalid_ip_rejected(self):
        analyzer = _analyzer()

        with pytest.raises(InvalidIPAddressError):
            await analyzer.analyze("300.0.0.1")


class TestScoringPipeline:
    """Test scoring, modifiers and action mapping."""

    @pytest.mark.asyncio
    async def test_failed_logins_lead_to_block(self):
        ip = "203.0.113.5"
        analyzer = _analyzer(make_settings(max_failed_attempts_per_hour=5, failed_attempts_penalty=90))
        for _ in range(6):
            analyzer.signal_gatherer.activity_tracker.record(ip, failed_login())

        decision = await analyzer.analyze(ip)

        assert decision.action == Action.BLOCK
        assert decision.risk_score >= 85
        assert decision.category == "brute_force"
        assert decision.scorer == "rule_based"
        assert decision.reason == "High risk score: 90.0"

        record = analyzer.block_store.get(ip)
        assert record is not None
        assert record.is_permanent is False
        assert record.is_automatic is True
        assert analyzer.block_store.offense_count(ip) == 1

    @pytest.mark.asyncio
    async def test_primary_failure_still_decides(self):
        ip = "203.0.113.7"
        primary = MockRiskScorer(error=ScorerError("upstream 500"))
        analyzer = _analyzer(primary_scorer=primary, locations={ip: GeoLocation(ip=ip, country_code="US")})

        decision = await analyzer.analyze(ip, {"is_first_visit": True})

        assert decision.action == Action.ALLOW
        assert decision.scorer == "rule_based"
        assert 0 <= decision.risk_score <= 100
        assert analyzer.fallback_decisions == 1
        assert analyzer.state_machine.get(ip) == IPState.ALLOWED

    @pytest.mark.asyncio
    async def test_primary_result_used(self):
        ip = "203.0.113.8"
        primary = MockRiskScorer(ScoreResult(risk_score=72, confidence=90, category="scanning", scorer="llm"))
        analyzer = _analyzer(primary_scorer=primary)

        decision = await analyzer.analyze(ip)

        assert decision.action == Action.REVIEW
        assert decision.scorer == "llm"
        assert decision.confidence == 90
        assert decision.reason == "Moderate risk score requires manual review: 72.0"
        assert analyzer.state_machine.get(ip) == IPState.UNDER_REVIEW

    @pytest.mark.asyncio
    async def test_monitor_band(self):
        ip = "203.0.113.9"
        analyzer = _analyzer(reports={ip: _reputation(40)})

        decision = await analyzer.analyze(ip)

        assert decision.action == Action.MONITOR
        assert decision.reason == "Low-moderate risk, monitoring recommended: 40.0"
        assert analyzer.state_machine.get(ip) == IPState.MONITORED

    def test_action_mapping_is_monotonic(self):
        analyzer = _analyzer()
        order = [Action.ALLOW, Action.MONITOR, Action.REVIEW, Action.BLOCK]
        actions = [analyzer.map_action(score / 2) for score in range(0, 201)]

        ranks = [order.index(action) for action in actions]
        assert ranks == sorted(ranks)
        assert analyzer.map_action(29.9) == Action.ALLOW
        assert analyzer.map_action(30) == Action.MONITOR
        assert analyzer.map_action(69.9) == Action.MONITOR
        assert analyzer.map_action(70) == Action.REVIEW
        assert analyzer.map_action(84.9) == Action.REVIEW
        assert analyzer.map_action(85) == Action.BLOCK
        assert analyzer.map_action(100) == Action.BLOCK


class TestModifiers:
    """Test contextual score adjustments."""

    def _modify(self, score: float, context: dict, **settings):
        analyzer = _analyzer(make_settings(**settings))
        signals = ThreatSignals(ip="203.0.113.20", context=context)
        return analyzer.apply_modifiers(ScoreResult(risk_score=score, confidence=75), signals)

    def test_first_visit_discount(self):
        score, _ = self._modify(40, {"is_first_visit": True})

        assert score == pytest.approx(32)

    def test_first_visit_discount_gated_on_base_score(self):
        score, _ = self._modify(60, {"isFirstVisit": True})

        assert score == 60

    def test_valid_session_discount(self):
        score, _ = self._modify(60, {"has_valid_session": True})

        assert score == pytest.approx(54)

    def test_both_discounts_gate_on_unadjusted_score(self):
        score, _ = self._modify(45, {"is_first_visit": True, "hasValidSession": True})

        assert score == pytest.approx(45 * 0.8 * 0.9)

    def test_suspicious_user_agent_penalty(self):
        score, indicators = self._modify(95, {"user_agent": "sqlmap/1.7"})

        assert score == 100
        assert "Suspicious user agent" in indicators

    def test_explicit_suspicious_flag(self):
        score, _ = self._modify(20, {"suspiciousUserAgent": True})

        assert score == 30

    def test_multipliers_are_configurable(self):
        score, _ = self._modify(40, {"is_first_visit": True}, first_visit_multiplier=0.5)

        assert score == 20


class TestCachingAndBlocks:
    """Test decision caching and already-blocked handling."""

    @pytest.mark.asyncio
    async def test_decision_is_cached(self):
        ip = "203.0.113.30"
        analyzer = _analyzer(reports={ip: _reputation(40)})

        first = await analyzer.analyze(ip)
        second = await analyzer.analyze(ip)

        assert second is first
        assert analyzer.analyses == 1

    @pytest.mark.asyncio
    async def test_cache_expiry_triggers_reanalysis(self):
        ip = "203.0.113.31"
        clock = FakeClock()
        analyzer = _analyzer(make_settings(decision_cache_ttl=60), clock=clock)

        await analyzer.analyze(ip)
        clock.advance(61)
        await analyzer.analyze(ip)

        assert analyzer.analyses == 2

    @pytest.mark.asyncio
    async def test_fallback_decision_uses_negative_ttl(self):
        ip = "203.0.113.32"
        clock = FakeClock()
        analyzer = _analyzer(
            make_settings(decision_cache_ttl=3600, negative_cache_ttl=10),
            primary_scorer=MockRiskScorer(error=RuntimeError("down")),
            clock=clock,
        )

        await analyzer.analyze(ip)
        clock.advance(11)
        await analyzer.analyze(ip)

        assert analyzer.analyses == 2

    @pytest.mark.asyncio
    async def test_already_blocked_skips_analysis(self):
        ip = "203.0.113.33"
        analyzer = _analyzer(reports={ip: _reputation(95)})

        await analyzer.analyze(ip)
        analyzer.decision_cache.clear()
        decision = await analyzer.analyze(ip)

        assert decision.action == Action.BLOCK
        assert decision.scorer == "block_store"
        assert decision.reason == "already blocked"
        assert decision.risk_score == 100
        assert analyzer.analyses == 1

    @pytest.mark.asyncio
    async def test_concurrent_analyses_of_same_ip_score_once(self):
        ip = "203.0.113.34"
        primary = MockRiskScorer(ScoreResult(risk_score=10, confidence=90, scorer="llm"), delay=0.05)
        analyzer = _analyzer(primary_scorer=primary)

        decisions = await asyncio.gather(*(analyzer.analyze(ip) for _ in range(5)))

        assert len(primary.calls) == 1
        assert len({id(decision) for decision in decisions}) == 1


class TestEnforcement:
    """Test block persistence and escalation."""

    @pytest.mark.asyncio
    async def test_repeat_offender_escalates_to_permanent(self):
        ip = "203.0.113.40"
        analyzer = _analyzer(make_settings(permanent_block_threshold=3), reports={ip: _reputation(95)})

        for _ in range(3):
            decision = await analyzer.analyze(ip)
            assert decision.action == Action.BLOCK
            assert analyzer.block_store.get(ip).is_permanent is False
            analyzer.block_store.unblock(ip, "Manual unblock")
            analyzer.decision_cache.clear()

        await analyzer.analyze(ip)

        assert analyzer.block_store.get(ip).is_permanent is True
        assert analyzer.block_store.offense_count(ip) == 4

    @pytest.mark.asyncio
    async def test_persistence_retried(self):
        ip = "203.0.113.41"
        repository = FlakyBlockRepository(failures=2)
        analyzer = _analyzer(reports={ip: _reputation(95)}, repository=repository)

        decision = await analyzer.analyze(ip)

        assert decision.enforcement_error is None
        assert analyzer.block_store.is_blocked(ip) is True
        assert len(repository.save_calls) == 3

    @pytest.mark.asyncio
    async def test_persistence_exhaustion_reported(self):
        ip = "203.0.113.42"
        repository = FlakyBlockRepository(failures=10)
        clock = FakeClock()
        analyzer = _analyzer(
            make_settings(negative_cache_ttl=5, block_persist_attempts=3),
            reports={ip: _reputation(95)},
            repository=repository,
            clock=clock,
        )

        decision = await analyzer.analyze(ip)

        assert decision.action == Action.BLOCK
        assert decision.enforcement_error is not None
        assert analyzer.enforcement_failures == 1
        assert analyzer.block_store.is_blocked(ip) is False
        assert len(repository.save_calls) == 3

        clock.advance(6)
        repository.failures = 0
        await analyzer.analyze(ip)
        assert analyzer.block_store.is_blocked(ip) is True

    @pytest.mark.asyncio
    async def test_explicit_retry_policy(self):
        ip = "203.0.113.43"
        repository = FlakyBlockRepository(failures=1)
        analyzer = _analyzer(reports={ip: _reputation(95)}, repository=repository)
        analyzer.retry_policy = RetryPolicy(max_attempts=1, initial_delay=0)

        decision = await analyzer.analyze(ip)

        assert decision.enforcement_error is not None
        assert len(repository.save_calls) == 1

    def test_retry_delay_backoff(self):
        policy = RetryPolicy(initial_delay=0.1, max_delay=0.3)

        assert policy.calculate_delay(1) == pytest.approx(0.1)
        assert policy.calculate_delay(2) == pytest.approx(0.2)
        assert policy.calculate_delay(3) == pytest.approx(0.3)
