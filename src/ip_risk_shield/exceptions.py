"""Error taxonomy for the IP risk engine.

Signal-gathering and primary-scorer failures are recovered inside the engine
and never reach callers. Persistence failures surface from the block store to
the analyzer, and invalid input is rejected at every entry point before any
state is touched.
"""

from typing import Any, Dict, Optional


class IPRiskError(Exception):
    """Base exception for the IP risk engine."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class InvalidIPAddressError(IPRiskError, ValueError):
    """Raised when an IP address cannot be parsed."""

    def __init__(self, ip: Any):
        super().__init__(f"Invalid IP address: {ip!r}", {"ip": str(ip)})
        self.ip = ip


class PersistenceError(IPRiskError):
    """The durable store could not commit a mutation."""


class WhitelistedIPError(IPRiskError):
    """Attempted to block an IP that is on the whitelist."""

    def __init__(self, ip: str):
        super().__init__(f"IP {ip} is whitelisted and cannot be blocked", {"ip": ip})
        self.ip = ip


class ScorerError(IPRiskError):
    """The primary scorer failed or returned malformed data."""


class ScorerUnavailableError(ScorerError):
    """The primary scorer is not configured, over budget, or open-circuited."""


class InvalidStateTransition(IPRiskError):
    """An IP state change that the lifecycle does not allow."""

    def __init__(self, ip: str, current: Any, target: Any):
        super().__init__(
            f"Invalid state transition for {ip}: {current} -> {target}",
            {"ip": ip, "current": str(current), "target": str(target)},
        )


class ConfigurationError(IPRiskError):
    """Configuration could not be loaded or failed validation."""
