"""Risk analysis pipeline.

Turns an IP address into a Decision and enforces block decisions:

1. whitelisted IPs are always allowed
2. a fresh cached decision is returned as-is
3. actively blocked IPs are reported as blocked without re-analysis
4. threat signals are gathered (partial data is acceptable)
5. the signals are scored, falling back to rule-based scoring on any
   primary scorer failure
6. contextual modifiers adjust the score
7. the score is mapped to an action
8. the decision is cached
9. block decisions are persisted with bounded retry and repeat offenders
   escalate to permanent blocks

Analysis runs are serialized per IP; different IPs never wait on each other.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from ip_risk_shield.block_store import BlockStore
from ip_risk_shield.cache import DecisionCache
from ip_risk_shield.concurrency import KeyedAsyncLock
from ip_risk_shield.config import EngineSettings, SettingsManager
from ip_risk_shield.exceptions import InvalidStateTransition, PersistenceError, WhitelistedIPError
from ip_risk_shield.models import (
    ACTION_STATES,
    Action,
    BlockRecord,
    Decision,
    ScoreResult,
    ThreatSignals,
    utcnow,
    validate_ip,
)
from ip_risk_shield.scoring import FallbackScorer, RiskScorer, RuleBasedScorer
from ip_risk_shield.signals import ThreatSignalGatherer
from ip_risk_shield.state import IPStateMachine

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Retry schedule for block persistence."""
    max_attempts: int = 3
    initial_delay: float = 0.1
    max_delay: float = 5.0
    exponential_base: float = 2.0
    jitter: bool = False

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt."""
        delay = self.initial_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


def _whitelisted(ip: str) -> Decision:
    return Decision(
        ip=ip,
        action=Action.ALLOW,
        risk_score=0.0,
        confidence=100.0,
        reason="whitelisted",
        scorer="whitelist",
    )


def _flag(context: Dict[str, Any], snake: str, camel: str) -> bool:
    return bool(context.get(snake, context.get(camel, False)))


class RiskAnalyzer:
    """Scores IPs and enforces block decisions."""

    def __init__(
        self,
        signal_gatherer: ThreatSignalGatherer,
        block_store: BlockStore,
        decision_cache: DecisionCache,
        primary_scorer: Optional[RiskScorer] = None,
        settings: Optional[SettingsManager] = None,
        state_machine: Optional[IPStateMachine] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._settings = settings or SettingsManager()
        self.signal_gatherer = signal_gatherer
        self.block_store = block_store
        self.decision_cache = decision_cache
        self.scorer = FallbackScorer(primary_scorer, RuleBasedScorer(self._settings), self._settings)
        self.state_machine = state_machine if state_machine is not None else IPStateMachine()
        self.retry_policy = retry_policy
        self._locks = KeyedAsyncLock()

        self.analyses = 0
        self.fallback_decisions = 0
        self.enforcement_failures = 0

    @property
    def settings(self) -> EngineSettings:
        return self._settings.settings

    async def analyze(self, ip: str, context: Optional[Dict[str, Any]] = None) -> Decision:
        """Produce a decision for an IP, enforcing it if it is a block."""
        ip = validate_ip(ip)
        context = dict(context or {})

        if self.block_store.is_whitelisted(ip):
            return _whitelisted(ip)

        async with self._locks.acquire(ip):
            cached = self.decision_cache.get(ip)
            if cached is not None:
                return cached

            record = self.block_store.get(ip)
            if record is not None:
                return Decision(
                    ip=ip,
                    action=Action.BLOCK,
                    risk_score=100.0,
                    confidence=100.0,
                    category=record.category,
                    indicators=tuple(record.indicators),
                    reason="already blocked",
                    scorer="block_store",
                )

            return await self._analyze_locked(ip, context)

    async def _analyze_locked(self, ip: str, context: Dict[str, Any]) -> Decision:
        self.analyses += 1
        signals = await self.signal_gatherer.gather(ip, context)
        result = await self.scorer.score(signals)
        if self.block_store.is_whitelisted(ip):
            logger.info(f"{ip} was whitelisted during analysis")
            return _whitelisted(ip)
        score, indicators = self.apply_modifiers(result, signals)
        action = self.map_action(score)

        decision = Decision(
            ip=ip,
            action=action,
            risk_score=score,
            confidence=result.confidence,
            category=result.category,
            indicators=tuple(indicators),
            reason=self.describe(action, score),
            scorer=result.scorer,
        )

        degraded = result.fallback_reason is not None
        if degraded:
            self.fallback_decisions += 1

        if action == Action.BLOCK:
            decision = await self._enforce(decision, signals)
            if decision.action == Action.ALLOW:
                return decision
            degraded = degraded or decision.enforcement_error is not None
        else:
            self._transition(ip, action)

        if degraded:
            self.decision_cache.put_negative(ip, decision)
        else:
            self.decision_cache.put(ip, decision)

        logger.info(
            f"Analyzed {ip}: {action.value} (score {score:.1f}, "
            f"confidence {result.confidence:.0f}, scorer {result.scorer})"
        )
        return decision

    def apply_modifiers(self, result: ScoreResult, signals: ThreatSignals) -> Tuple[float, List[str]]:
        """Adjust a raw score with request context; returns the clamped score and indicators."""
        settings = self.settings
        context = signals.context
        base = result.risk_score
        score = base
        indicators = list(result.indicators)

        # Both multipliers are gated on the unadjusted score
        if _flag(context, "is_first_visit", "isFirstVisit") and base < settings.first_visit_max_base:
            score *= settings.first_visit_multiplier
        if _flag(context, "has_valid_session", "hasValidSession") and base < settings.valid_session_max_base:
            score *= settings.valid_session_multiplier
        if self._suspicious_user_agent(context, settings):
            score += settings.suspicious_user_agent_penalty
            indicators.append("Suspicious user agent")

        return max(0.0, min(100.0, score)), indicators

    @staticmethod
    def _suspicious_user_agent(context: Dict[str, Any], settings: EngineSettings) -> bool:
        if _flag(context, "suspicious_user_agent", "suspiciousUserAgent"):
            return True
        user_agent = context.get("user_agent", context.get("userAgent"))
        if not user_agent:
            return False
        lowered = str(user_agent).lower()
        return any(pattern.lower() in lowered
                   for pattern in settings.suspicious_user_agent_patterns)

    def map_action(self, score: float) -> Action:
        settings = self.settings
        if score >= settings.auto_block_threshold:
            return Action.BLOCK
        if score >= settings.review_threshold:
            return Action.REVIEW
        if score >= settings.monitor_threshold:
            return Action.MONITOR
        return Action.ALLOW

    @staticmethod
    def describe(action: Action, score: float) -> str:
        if action == Action.BLOCK:
            return f"High risk score: {score:.1f}"
        if action == Action.REVIEW:
            return f"Moderate risk score requires manual review: {score:.1f}"
        if action == Action.MONITOR:
            return f"Low-moderate risk, monitoring recommended: {score:.1f}"
        return "IP appears safe"

    def _transition(self, ip: str, action: Action) -> None:
        try:
            self.state_machine.transition(ip, ACTION_STATES[action])
        except InvalidStateTransition as e:
            logger.warning(f"Ignoring {action.value} decision for {ip}: {e.message}")

    async def _enforce(self, decision: Decision, signals: ThreatSignals) -> Decision:
        settings = self.settings
        ip = decision.ip
        prior_offenses = self.block_store.offense_count(ip)
        permanent = prior_offenses >= settings.permanent_block_threshold
        now = utcnow()

        record = BlockRecord(
            ip=ip,
            reason=decision.reason,
            risk_score=decision.risk_score,
            category=decision.category,
            indicators=list(decision.indicators),
            created_at=now,
            expires_at=None if permanent else now + timedelta(seconds=settings.temporary_block_duration),
            is_automatic=True,
            source="risk-analysis",
            country=signals.location.country_code if signals.location else None,
        )

        policy = self.retry_policy or RetryPolicy(
            max_attempts=settings.block_persist_attempts,
            initial_delay=settings.block_persist_retry_delay,
        )
        last_error: Optional[PersistenceError] = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                self.block_store.block(record)
                last_error = None
                break
            except WhitelistedIPError:
                logger.info(f"{ip} was whitelisted during analysis, not blocking")
                return _whitelisted(ip)
            except PersistenceError as e:
                last_error = e
                logger.warning(f"Block persistence attempt {attempt}/{policy.max_attempts} failed for {ip}: {e}")
                if attempt < policy.max_attempts:
                    await asyncio.sleep(policy.calculate_delay(attempt))

        if last_error is not None:
            self.enforcement_failures += 1
            logger.critical(f"Could not persist block for {ip} after {policy.max_attempts} attempts: {last_error}")
            return decision.with_enforcement_error(str(last_error))

        try:
            self.block_store.record_offense(ip)
        except PersistenceError as e:
            logger.error(f"Could not record offense for {ip}: {e}")

        if permanent:
            logger.warning(f"Permanently blocked repeat offender {ip} ({prior_offenses} prior blocks)")
        return decision
