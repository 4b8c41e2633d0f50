"""Threat signal provider adapters.

Geolocation and reputation providers are external collaborators. This module
defines their interfaces and ships thin reference adapters:

- StaticGeolocationProvider / StaticReputationProvider: in-memory data for
  development and tests
- IPApiGeolocationProvider: ip-api.com lookups
- AbuseIPDBReputationProvider: AbuseIPDB ``/check`` lookups
- PlaintextFeedReputationProvider: downloadable IP/CIDR block lists that are
  re-pulled by the feed refresh job

Adapters raise on transport errors; the signal gatherer owns timeouts and
converts failures into missing signals.
"""

import ipaddress
import logging
from abc import ABC, abstractmethod
from threading import RLock
from typing import Dict, Iterable, List, Optional, Union

import httpx

from ip_risk_shield.models import GeoLocation, ReputationReport

logger = logging.getLogger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class GeolocationProvider(ABC):
    """Abstract base class for geolocation service providers."""

    name: str = "geolocation"

    @abstractmethod
    async def lookup(self, ip: str) -> Optional[GeoLocation]:
        """Get geolocation information for an IP address."""
        pass


class ReputationProvider(ABC):
    """Abstract base class for IP reputation providers."""

    name: str = "reputation"

    @abstractmethod
    async def lookup(self, ip: str) -> Optional[ReputationReport]:
        """Get a reputation report for an IP address."""
        pass

    @property
    def supports_refresh(self) -> bool:
        return False

    async def refresh(self) -> int:
        """Re-pull any externally cached data; returns the number of entries loaded."""
        return 0


class StaticGeolocationProvider(GeolocationProvider):
    """Geolocation provider backed by a fixed mapping."""

    name = "static-geolocation"

    def __init__(self, locations: Optional[Dict[str, GeoLocation]] = None):
        self.locations: Dict[str, GeoLocation] = dict(locations or {})

    async def lookup(self, ip: str) -> Optional[GeoLocation]:
        return self.locations.get(ip)


class StaticReputationProvider(ReputationProvider):
    """Reputation provider backed by a fixed mapping."""

    name = "static-reputation"

    def __init__(self, reports: Optional[Dict[str, ReputationReport]] = None):
        self.reports: Dict[str, ReputationReport] = dict(reports or {})

    async def lookup(self, ip: str) -> Optional[ReputationReport]:
        return self.reports.get(ip)


class IPApiGeolocationProvider(GeolocationProvider):
    """Geolocation provider using ip-api.com service."""

    name = "ip-api"
    FIELDS = "status,message,country,countryCode,regionName,city,as,proxy,hosting"

    def __init__(self, api_key: Optional[str] = None, timeout: float = 5.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.timeout = timeout
        self.base_url = "https://pro.ip-api.com/json" if api_key else "http://ip-api.com/json"
        self._client = client

    async def lookup(self, ip: str) -> Optional[GeoLocation]:
        """Get geolocation from ip-api.com."""
        params = {"fields": self.FIELDS}
        if self.api_key:
            params["key"] = self.api_key

        if self._client is not None:
            response = await self._client.get(f"{self.base_url}/{ip}", params=params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.base_url}/{ip}", params=params)
        response.raise_for_status()
        data = response.json()

        if data.get("status") != "success":
            logger.debug(f"ip-api lookup for {ip} unsuccessful: {data.get('message')}")
            return None

        asn_field = data.get("as") or ""
        asn_token = asn_field.split(" ")[0].replace("AS", "")
        return GeoLocation(
            ip=ip,
            country=data.get("country"),
            country_code=data.get("countryCode"),
            region=data.get("regionName"),
            city=data.get("city"),
            asn=int(asn_token) if asn_token.isdigit() else None,
            asn_org=" ".join(asn_field.split(" ")[1:]) or None,
            is_proxy=bool(data.get("proxy", False)),
            is_hosting=bool(data.get("hosting", False)),
        )


class AbuseIPDBReputationProvider(ReputationProvider):
    """AbuseIPDB reputation provider."""

    name = "abuseipdb"

    def __init__(self, api_key: str, max_age_days: int = 90, timeout: float = 5.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.max_age_days = max_age_days
        self.timeout = timeout
        self.base_url = "https://api.abuseipdb.com/api/v2"
        self._client = client

    async def lookup(self, ip: str) -> Optional[ReputationReport]:
        """Check IP reputation with AbuseIPDB."""
        headers = {"Key": self.api_key, "Accept": "application/json"}
        params = {"ipAddress": ip, "maxAgeInDays": self.max_age_days}

        if self._client is not None:
            response = await self._client.get(f"{self.base_url}/check", headers=headers, params=params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.base_url}/check", headers=headers, params=params)
        response.raise_for_status()
        data = response.json().get("data", {})

        abuse_confidence = float(data.get("abuseConfidencePercentage", 0))
        total_reports = int(data.get("totalReports", 0) or 0)

        indicators = []
        if abuse_confidence > 0:
            indicators.append(f"AbuseIPDB confidence: {abuse_confidence:.0f}%")
        if total_reports > 0:
            indicators.append(f"AbuseIPDB reports: {total_reports}")

        if abuse_confidence > 75:
            category = "malware"
        elif abuse_confidence > 25:
            category = "scanning"
        else:
            category = None

        return ReputationReport(
            risk_score=abuse_confidence,
            category=category,
            indicators=indicators,
            sources=[self.name],
        )


class PlaintextFeedReputationProvider(ReputationProvider):
    """Reputation from downloadable plaintext IP/CIDR block lists.

    Each feed URL is expected to return one IP or CIDR per line, with ``#``
    comments. Listed addresses receive ``listed_risk_score``.
    """

    def __init__(self, feeds: Dict[str, str], listed_risk_score: float = 50.0,
                 category: str = "malware", timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None, name: str = "threat-feeds"):
        self.feeds = dict(feeds)
        self.listed_risk_score = listed_risk_score
        self.category = category
        self.timeout = timeout
        self.name = name
        self._client = client
        self._addresses: Dict[str, List[str]] = {}
        self._networks: List[tuple] = []
        self._lock = RLock()
        self.loaded = False

    @property
    def supports_refresh(self) -> bool:
        return True

    async def lookup(self, ip: str) -> Optional[ReputationReport]:
        if not self.loaded:
            await self.refresh()

        address = ipaddress.ip_address(ip)
        with self._lock:
            sources = list(self._addresses.get(ip, []))
            sources.extend(
                feed for network, feed in self._networks
                if address.version == network.version and address in network and feed not in sources
            )

        if not sources:
            return ReputationReport(risk_score=0.0, sources=[self.name])

        return ReputationReport(
            risk_score=self.listed_risk_score,
            category=self.category,
            indicators=[f"Listed in threat feed: {feed}" for feed in sources],
            sources=sources,
        )

    async def refresh(self) -> int:
        """Download every feed; a failing feed keeps its previous entries."""
        addresses: Dict[str, List[str]] = {}
        networks: List[tuple] = []

        with self._lock:
            previous_addresses = dict(self._addresses)
            previous_networks = list(self._networks)

        for feed_name, url in self.feeds.items():
            try:
                lines = await self._download(url)
            except httpx.HTTPError as e:
                logger.warning(f"Threat feed {feed_name} refresh failed: {e}")
                for ip, feeds in previous_addresses.items():
                    if feed_name in feeds:
                        addresses.setdefault(ip, []).append(feed_name)
                networks.extend(entry for entry in previous_networks if entry[1] == feed_name)
                continue

            for entry in self._parse(lines):
                if isinstance(entry, str):
                    addresses.setdefault(entry, []).append(feed_name)
                else:
                    networks.append((entry, feed_name))

        with self._lock:
            self._addresses = addresses
            self._networks = networks
            self.loaded = True

        total = len(addresses) + len(networks)
        logger.info(f"Threat feeds refreshed: {total} entries from {len(self.feeds)} feeds")
        return total

    async def _download(self, url: str) -> List[str]:
        if self._client is not None:
            response = await self._client.get(url)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)
        response.raise_for_status()
        return response.text.splitlines()

    @staticmethod
    def _parse(lines: Iterable[str]) -> Iterable[Union[str, IPNetwork]]:
        for line in lines:
            line = line.split("#", 1)[0].strip()
            if not line:
                continue
            token = line.split()[0]
            try:
                if "/" in token:
                    network = ipaddress.ip_network(token, strict=False)
                    if network.num_addresses == 1:
                        yield str(network.network_address)
                    else:
                        yield network
                else:
                    yield str(ipaddress.ip_address(token))
            except ValueError:
                logger.debug(f"Skipping unparseable feed entry: {token!r}")
