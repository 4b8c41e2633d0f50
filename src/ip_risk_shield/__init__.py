"""IP Risk Shield - automated IP risk scoring and blocking.

IP Risk Shield decides, for any inbound IP address, whether to allow it,
monitor it, flag it for review, or block it, and enforces block decisions over
time with expiry, repeat-offense escalation and manual unblock.

Key Components:
    - IPRiskEngine: facade wiring activity tracking, signal gathering,
      scoring, caching, blocking and maintenance
    - IPRiskMiddleware: Starlette/FastAPI middleware rejecting blocked IPs
      and recording request activity
    - EngineSettings / SettingsManager: validated, runtime-adjustable policy

Usage:
    ```python
    from fastapi import FastAPI
    from ip_risk_shield import IPRiskEngine, IPRiskMiddleware

    engine = IPRiskEngine()
    app = FastAPI()
    app.add_middleware(IPRiskMiddleware, engine=engine)

    @app.on_event("startup")
    async def start_engine():
        await engine.start()
    ```
"""

from ip_risk_shield.analyzer import RetryPolicy, RiskAnalyzer
from ip_risk_shield.block_store import BlockStore
from ip_risk_shield.cache import DecisionCache
from ip_risk_shield.config import (
    EngineSettings,
    SettingsManager,
    create_settings_manager,
)
from ip_risk_shield.engine import IPRiskEngine, create_ip_risk_engine
from ip_risk_shield.exceptions import (
    ConfigurationError,
    InvalidIPAddressError,
    InvalidStateTransition,
    IPRiskError,
    PersistenceError,
    ScorerError,
    ScorerUnavailableError,
    WhitelistedIPError,
)
from ip_risk_shield.middleware import IPRiskMiddleware
from ip_risk_shield.models import (
    Action,
    ActivityEvent,
    BlockingReport,
    BlockRecord,
    Decision,
    GeoLocation,
    HistoryEntry,
    IPState,
    ReputationReport,
)
from ip_risk_shield.providers import (
    AbuseIPDBReputationProvider,
    GeolocationProvider,
    IPApiGeolocationProvider,
    PlaintextFeedReputationProvider,
    ReputationProvider,
)
from ip_risk_shield.scoring import FallbackScorer, LLMRiskScorer, RiskScorer, RuleBasedScorer
from ip_risk_shield.storage import BlockRepository, InMemoryBlockRepository, SQLiteBlockRepository

__version__ = "0.1.0"

__all__ = [
    "IPRiskEngine",
    "create_ip_risk_engine",
    "IPRiskMiddleware",
    "EngineSettings",
    "SettingsManager",
    "create_settings_manager",
    "RiskAnalyzer",
    "RetryPolicy",
    "BlockStore",
    "DecisionCache",
    "Action",
    "ActivityEvent",
    "BlockingReport",
    "BlockRecord",
    "Decision",
    "GeoLocation",
    "HistoryEntry",
    "IPState",
    "ReputationReport",
    "GeolocationProvider",
    "ReputationProvider",
    "IPApiGeolocationProvider",
    "AbuseIPDBReputationProvider",
    "PlaintextFeedReputationProvider",
    "RiskScorer",
    "RuleBasedScorer",
    "LLMRiskScorer",
    "FallbackScorer",
    "BlockRepository",
    "InMemoryBlockRepository",
    "SQLiteBlockRepository",
    "IPRiskError",
    "InvalidIPAddressError",
    "PersistenceError",
    "WhitelistedIPError",
    "ScorerError",
    "ScorerUnavailableError",
    "InvalidStateTransition",
    "ConfigurationError",
]
