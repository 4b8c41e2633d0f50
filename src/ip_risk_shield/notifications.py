"""Notification and report sinks.

Delivery of alerts and reports is best-effort: sink failures are logged and
never propagate into the analyzer or the maintenance jobs.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import httpx

from ip_risk_shield.models import BlockingReport, BlockRecord, HistoryEntry

logger = logging.getLogger(__name__)

alert_logger = logging.getLogger("ip_risk_shield.alerts")
report_logger = logging.getLogger("ip_risk_shield.reports")


class NotificationSink(ABC):
    """Abstract base class for block/unblock notifications."""

    @abstractmethod
    async def notify(self, entry: HistoryEntry, record: BlockRecord) -> None:
        """Deliver a block or unblock notification."""
        pass


class ReportSink(ABC):
    """Abstract base class for periodic report destinations."""

    @abstractmethod
    async def write(self, report: BlockingReport) -> None:
        """Persist or deliver a blocking report."""
        pass


class LoggingNotificationSink(NotificationSink):
    """Writes notifications to the ``ip_risk_shield.alerts`` logger."""

    def __init__(self, level: int = logging.WARNING):
        self.level = level

    async def notify(self, entry: HistoryEntry, record: BlockRecord) -> None:
        alert_logger.log(
            self.level,
            f"IP {entry.action.value}: {entry.ip} ({entry.reason})",
            extra={"ip_risk": {**entry.to_dict(), "country": record.country}},
        )


class WebhookNotificationSink(NotificationSink):
    """Posts notifications as JSON to a webhook URL."""

    def __init__(self, webhook_url: str, headers: Optional[Dict[str, str]] = None,
                 timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        self.headers = headers or {}
        self.timeout = timeout
        self._client = client

    async def notify(self, entry: HistoryEntry, record: BlockRecord) -> None:
        payload = {
            "event": f"ip_{entry.action.value}",
            "entry": entry.to_dict(),
            "record": record.to_dict(),
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.webhook_url, json=payload, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.webhook_url, json=payload, headers=self.headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send webhook notification for {entry.ip}: {e}")


class LoggingReportSink(ReportSink):
    """Writes reports to the ``ip_risk_shield.reports`` logger."""

    async def write(self, report: BlockingReport) -> None:
        report_logger.info(f"Blocking report: {json.dumps(report.to_dict(), default=str)}")


class FileReportSink(ReportSink):
    """Writes one JSON file per day into a directory."""

    def __init__(self, directory: str, prefix: str = "blocking-report"):
        self.directory = Path(directory)
        self.prefix = prefix

    def path_for(self, report: BlockingReport) -> Path:
        return self.directory / f"{self.prefix}-{report.generated_at.date().isoformat()}.json"

    async def write(self, report: BlockingReport) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(report)
        path.write_text(json.dumps(report.to_dict(), indent=2, default=str), encoding="utf-8")
        logger.info(f"Blocking report written to {path}")
