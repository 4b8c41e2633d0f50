"""Tests for geolocation and reputation provider adapters."""

import httpx
import pytest

from ip_risk_shield.models import GeoLocation, ReputationReport
from ip_risk_shield.providers import (
    AbuseIPDBReputationProvider,
    IPApiGeolocationProvider,
    PlaintextFeedReputationProvider,
    StaticGeolocationProvider,
    StaticReputationProvider,
)

FEED = """# Example block list
198.51.100.23
203.0.113.0/24   # whole range
192.0.2.7/32
not-an-ip
2001:db8::/32
"""


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestStaticProviders:
    """Test in-memory providers."""

    @pytest.mark.asyncio
    async def test_static_lookups(self):
        geo = StaticGeolocationProvider({"198.51.100.1": GeoLocation(ip="198.51.100.1", country_code="FR")})
        rep = StaticReputationProvider({"198.51.100.1": ReputationReport(risk_score=12)})

        assert (await geo.lookup("198.51.100.1")).country_code == "FR"
        assert (await geo.lookup("198.51.100.2")) is None
        assert (await rep.lookup("198.51.100.1")).risk_score == 12
        assert rep.supports_refresh is False
        assert await rep.refresh() == 0


class TestIPApiGeolocationProvider:
    """Test ip-api.com response mapping."""

    @pytest.mark.asyncio
    async def test_successful_lookup(self):
        def handler(request):
            assert request.url.path == "/json/198.51.100.23"
            return httpx.Response(200, json={
                "status": "success",
                "country": "China",
                "countryCode": "CN",
                "regionName": "Beijing",
                "city": "Beijing",
                "as": "AS4134 Chinanet",
                "proxy": True,
                "hosting": False,
            })

        provider = IPApiGeolocationProvider(client=_client(handler))
        location = await provider.lookup("198.51.100.23")

        assert location.country_code == "CN"
        assert location.asn == 4134
        assert location.asn_org == "Chinanet"
        assert location.is_proxy is True
        assert location.is_hosting is False

    @pytest.mark.asyncio
    async def test_unsuccessful_lookup(self):
        def handler(request):
            return httpx.Response(200, json={"status": "fail", "message": "reserved range"})

        provider = IPApiGeolocationProvider(client=_client(handler))

        assert await provider.lookup("10.0.0.1") is None

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        def handler(request):
            return httpx.Response(429)

        provider = IPApiGeolocationProvider(client=_client(handler))

        with pytest.raises(httpx.HTTPStatusError):
            await provider.lookup("198.51.100.23")

    def test_pro_endpoint_with_key(self):
        assert IPApiGeolocationProvider(api_key="k").base_url == "https://pro.ip-api.com/json"


class TestAbuseIPDBReputationProvider:
    """Test AbuseIPDB response mapping."""

    @pytest.mark.asyncio
    async def test_high_confidence_is_malware(self):
        def handler(request):
            assert request.headers["Key"] == "abuse-key"
            assert request.url.params["ipAddress"] == "198.51.100.23"
            return httpx.Response(200, json={"data": {"abuseConfidencePercentage": 92, "totalReports": 14}})

        provider = AbuseIPDBReputationProvider("abuse-key", client=_client(handler))
        report = await provider.lookup("198.51.100.23")

        assert report.risk_score == 92
        assert report.category == "malware"
        assert report.indicators == ["AbuseIPDB confidence: 92%", "AbuseIPDB reports: 14"]
        assert report.sources == ["abuseipdb"]

    @pytest.mark.asyncio
    async def test_clean_ip(self):
        def handler(request):
            return httpx.Response(200, json={"data": {"abuseConfidencePercentage": 0, "totalReports": 0}})

        report = await AbuseIPDBReputationProvider("abuse-key", client=_client(handler)).lookup("198.51.100.1")

        assert report.risk_score == 0
        assert report.category is None
        assert report.indicators == []


class TestPlaintextFeedReputationProvider:
    """Test downloadable block lists."""

    @pytest.mark.asyncio
    async def test_feed_parsing_and_lookup(self):
        def handler(request):
            return httpx.Response(200, text=FEED)

        provider = PlaintextFeedReputationProvider({"blocklist": "https://feeds.example/list.txt"},
                                                   client=_client(handler))

        listed = await provider.lookup("198.51.100.23")
        in_range = await provider.lookup("203.0.113.77")
        single = await provider.lookup("192.0.2.7")
        ipv6 = await provider.lookup("2001:db8::42")
        clean = await provider.lookup("198.51.100.24")

        assert listed.risk_score == 50
        assert listed.category == "malware"
        assert listed.indicators == ["Listed in threat feed: blocklist"]
        assert in_range.risk_score == 50
        assert single.risk_score == 50
        assert ipv6.risk_score == 50
        assert clean.risk_score == 0
        assert provider.supports_refresh is True

    @pytest.mark.asyncio
    async def test_refresh_counts_entries(self):
        def handler(request):
            return httpx.Response(200, text=FEED)

        provider = PlaintextFeedReputationProvider({"blocklist": "https://feeds.example/list.txt"},
                                                   client=_client(handler))

        assert await provider.refresh() == 4

    @pytest.mark.asyncio
    async def test_failing_feed_keeps_previous_entries(self):
        responses = {"ok": True}

        def handler(request):
            if responses["ok"]:
                return httpx.Response(200, text="198.51.100.23\n")
            return httpx.Response(503)

        provider = PlaintextFeedReputationProvider({"blocklist": "https://feeds.example/list.txt"},
                                                   client=_client(handler))
        await provider.refresh()

        responses["ok"] = False
        await provider.refresh()

        assert (await provider.lookup("198.51.100.23")).risk_score == 50

    @pytest.mark.asyncio
    async def test_multiple_feeds_are_attributed(self):
        def handler(request):
            if request.url.path == "/a.txt":
                return httpx.Response(200, text="198.51.100.23\n")
            return httpx.Response(200, text="198.51.100.0/24\n")

        provider = PlaintextFeedReputationProvider(
            {"feed-a": "https://feeds.example/a.txt", "feed-b": "https://feeds.example/b.txt"},
            client=_client(handler),
        )
        report = await provider.lookup("198.51.100.23")

        assert report.sources == ["feed-a", "feed-b"]
