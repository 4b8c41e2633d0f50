"""Risk scorers.

A scorer turns gathered threat signals into a raw 0-100 risk score. This
module provides:

- RuleBasedScorer: deterministic point-based rules, always available
- LLMRiskScorer: OpenAI-compatible chat-completions assessment over httpx
- FallbackScorer: runs a primary scorer under a timeout and a circuit,
  falling back to the rule-based scorer on any failure
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from enum import Enum
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ip_risk_shield.config import EngineSettings, SettingsManager
from ip_risk_shield.exceptions import ScorerError, ScorerUnavailableError
from ip_risk_shield.models import ScoreResult, ThreatSignals

logger = logging.getLogger(__name__)


class RiskScorer(ABC):
    """Abstract base class for risk scorers."""

    name: str = "scorer"

    @abstractmethod
    async def score(self, signals: ThreatSignals) -> ScoreResult:
        """Score the gathered signals on the 0-100 scale."""
        pass


def severity_for(score: float) -> str:
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 30:
        return "medium"
    return "low"


class RuleBasedScorer(RiskScorer):
    """Deterministic point-based scorer."""

    name = "rule_based"

    def __init__(self, settings: Optional[SettingsManager] = None):
        self._settings = settings or SettingsManager()

    async def score(self, signals: ThreatSignals) -> ScoreResult:
        return self.evaluate(signals)

    def evaluate(self, signals: ThreatSignals) -> ScoreResult:
        """Synchronous rule evaluation."""
        settings = self._settings.settings
        contributions: List[Tuple[float, str]] = []
        indicators: List[str] = []

        location = signals.location
        if location is not None:
            country = (location.country_code or location.country or "").upper()
            if country and country in settings.blocked_countries:
                contributions.append((settings.blocked_country_penalty, "geographic"))
                indicators.append(f"Location: {country} (blocked country)")
            if location.is_tor:
                contributions.append((settings.tor_penalty, "tor"))
                indicators.append("Tor exit node detected")
            if location.is_proxy or location.is_vpn:
                contributions.append((settings.proxy_penalty, "vpn"))
                indicators.append("Proxy/VPN detected")

        reputation = signals.reputation
        if reputation is not None:
            if reputation.risk_score > 0:
                contributions.append((reputation.risk_score, reputation.category or "reputation"))
            indicators.extend(reputation.indicators)

        activity = signals.activity
        if activity.request_rate > settings.max_requests_per_minute:
            contributions.append((settings.request_rate_penalty, "scanning"))
            indicators.append("High request rate detected")
        if activity.failed_attempts > settings.max_failed_attempts_per_hour:
            contributions.append((settings.failed_attempts_penalty, "brute_force"))
            indicators.append("Multiple failed authentication attempts")

        risk_score = min(100.0, sum(points for points, _ in contributions))
        category = "legitimate"
        if contributions:
            # max() keeps the first of equal contributions
            category = max(contributions, key=lambda item: item[0])[1]

        return ScoreResult(
            risk_score=risk_score,
            confidence=settings.rule_based_confidence,
            category=category,
            indicators=indicators,
            reasoning=f"Rule-based analysis identified {len(indicators)} risk indicators",
            recommendation=self._recommend(risk_score, settings),
            severity=severity_for(risk_score),
            false_positive_risk=20.0,
            scorer=self.name,
        )

    @staticmethod
    def _recommend(score: float, settings: EngineSettings) -> str:
        if score >= settings.auto_block_threshold:
            return "block"
        if score >= settings.review_threshold:
            return "review"
        if score >= settings.monitor_threshold:
            return "monitor"
        return "allow"


class LLMAssessment(BaseModel):
    """Structured assessment returned by the language model."""

    model_config = ConfigDict(populate_by_name=True)

    risk_score: float = Field(alias="riskScore", ge=0, le=100)
    confidence: float = Field(ge=0, le=100)
    category: str = "legitimate"
    reasoning: str = ""
    indicators: List[str] = Field(default_factory=list)
    recommendation: Optional[str] = None
    severity: Optional[str] = None
    false_positive_risk: Optional[float] = Field(default=None, alias="falsePositiveRisk", ge=0, le=100)
    additional_context: Optional[str] = Field(default=None, alias="additionalContext")


SYSTEM_PROMPT = (
    "You are a cybersecurity expert analyzing IP addresses for potential threats. "
    "Provide a JSON response with risk assessment, recommendations, and confidence scores. "
    "Consider factors like geolocation, known threat feeds, behavioral patterns, and context. "
    "Risk scores should be 0-100 where 0 is safe and 100 is maximum threat."
)

RESPONSE_SHAPE = """{
  "riskScore": 0-100,
  "confidence": 0-100,
  "category": "malware|botnet|scanning|spam|tor|vpn|legitimate",
  "reasoning": "detailed explanation of the assessment",
  "indicators": ["list", "of", "risk", "indicators"],
  "recommendation": "block|review|monitor|allow",
  "severity": "low|medium|high|critical",
  "falsePositiveRisk": 0-100,
  "additionalContext": "any additional insights"
}"""


class LLMRiskScorer(RiskScorer):
    """Risk scorer backed by an OpenAI-compatible chat-completions endpoint."""

    name = "llm"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4",
        base_url: str = "https://api.openai.com/v1",
        max_calls_per_minute: int = 60,
        temperature: float = 0.3,
        max_tokens: int = 800,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_calls_per_minute = max_calls_per_minute
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client = client
        self._clock = clock
        self._calls: Deque[float] = deque()
        self._budget_lock = Lock()
        self.total_calls = 0
        self.prompt_tokens = 0
        self.completion_tokens = 0

    def _take_budget(self) -> None:
        now = self._clock()
        with self._budget_lock:
            while self._calls and now - self._calls[0] >= 60:
                self._calls.popleft()
            if len(self._calls) >= self.max_calls_per_minute:
                raise ScorerUnavailableError(
                    f"LLM call budget of {self.max_calls_per_minute}/min exhausted"
                )
            self._calls.append(now)

    def build_prompt(self, signals: ThreatSignals) -> str:
        data = signals.to_dict()
        return (
            "Analyze this IP address for security threats:\n\n"
            f"IP Address: {signals.ip}\n\n"
            f"Geolocation Data:\n{json.dumps(data['location'], indent=2, default=str)}\n\n"
            f"Reputation Data:\n{json.dumps(data['reputation'], indent=2, default=str)}\n\n"
            f"Activity Patterns:\n{json.dumps(data['activity'], indent=2, default=str)}\n\n"
            f"Context:\n{json.dumps(data['context'], indent=2, default=str)}\n\n"
            "Please provide a JSON response with the following structure:\n"
            f"{RESPONSE_SHAPE}"
        )

    async def score(self, signals: ThreatSignals) -> ScoreResult:
        self._take_budget()

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self.build_prompt(signals)},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            if self._client is not None:
                response = await self._client.post(
                    f"{self.base_url}/chat/completions", json=payload, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        f"{self.base_url}/chat/completions", json=payload, headers=headers
                    )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ScorerError(f"LLM request failed: {e}") from e

        self.total_calls += 1
        return self._parse(response.json())

    def _parse(self, body: Dict[str, Any]) -> ScoreResult:
        try:
            content = body["choices"][0]["message"]["content"]
            assessment = LLMAssessment.model_validate(json.loads(content))
        except (KeyError, IndexError, TypeError, ValueError, ValidationError) as e:
            raise ScorerError(f"Malformed LLM assessment: {e}") from e

        usage = body.get("usage") or {}
        self.prompt_tokens += int(usage.get("prompt_tokens", 0) or 0)
        self.completion_tokens += int(usage.get("completion_tokens", 0) or 0)

        return ScoreResult(
            risk_score=assessment.risk_score,
            confidence=assessment.confidence,
            category=assessment.category,
            indicators=list(assessment.indicators),
            reasoning=assessment.reasoning,
            recommendation=assessment.recommendation,
            severity=assessment.severity,
            false_positive_risk=assessment.false_positive_risk,
            scorer=self.name,
        )


class CircuitState(str, Enum):
    """Primary scorer circuit states."""
    CLOSED = "closed"      # Primary is called
    OPEN = "open"          # Primary is skipped
    HALF_OPEN = "half_open"  # One trial call allowed


class ScorerCircuit:
    """Consecutive-failure circuit breaker for the primary scorer."""

    def __init__(self, failure_threshold: int = 3, recovery_timeout: float = 300.0,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._lock = Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.recovery_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            logger.info("Primary scorer circuit half-open, allowing a trial call")

    def allow_request(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Primary scorer circuit closed")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        f"Primary scorer circuit opened after {self._failures} consecutive failures"
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()

    def to_dict(self) -> Dict[str, Any]:
        return {"state": self.state.value, "consecutive_failures": self._failures}


class FallbackScorer(RiskScorer):
    """Runs the primary scorer and substitutes the fallback on any failure."""

    name = "fallback"

    def __init__(
        self,
        primary: Optional[RiskScorer],
        fallback: RiskScorer,
        settings: Optional[SettingsManager] = None,
        circuit: Optional[ScorerCircuit] = None,
    ):
        self.primary = primary
        self.fallback = fallback
        self._settings = settings or SettingsManager()
        self.circuit = circuit or ScorerCircuit(
            failure_threshold=self._settings.settings.scorer_failure_threshold,
            recovery_timeout=self._settings.settings.scorer_recovery_timeout,
        )

    async def score(self, signals: ThreatSignals) -> ScoreResult:
        if self.primary is None:
            return await self.fallback.score(signals)
        if not self.circuit.allow_request():
            return await self._fall_back(signals, "primary scorer circuit open")

        try:
            result = await asyncio.wait_for(
                self.primary.score(signals), timeout=self._settings.settings.scorer_timeout
            )
        except asyncio.TimeoutError:
            self.circuit.record_failure()
            return await self._fall_back(signals, "primary scorer timed out")
        except ScorerUnavailableError as e:
            return await self._fall_back(signals, str(e))
        except Exception as e:
            self.circuit.record_failure()
            return await self._fall_back(signals, f"primary scorer failed: {e}")

        if not isinstance(result, ScoreResult) or not 0 <= result.risk_score <= 100:
            self.circuit.record_failure()
            return await self._fall_back(signals, "primary scorer returned malformed result")

        self.circuit.record_success()
        return result

    async def _fall_back(self, signals: ThreatSignals, reason: str) -> ScoreResult:
        logger.warning(f"Falling back to {self.fallback.name} scoring for {signals.ip}: {reason}")
        result = await self.fallback.score(signals)
        result.fallback_reason = reason
        return result
