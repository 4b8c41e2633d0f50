"""Tests for the Starlette/FastAPI request middleware."""

from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from ip_risk_shield.middleware import IPRiskMiddleware

from tests.mocks.ip_risk_mocks import make_engine, make_settings

CLIENT_IP = "198.51.100.200"


def _app(engine, **middleware_kwargs):
    app = FastAPI()
    middleware_kwargs.setdefault("trust_forwarded_headers", True)
    app.add_middleware(IPRiskMiddleware, engine=engine, **middleware_kwargs)

    @app.get("/")
    async def index():
        return {"message": "ok"}

    @app.post("/login")
    async def login():
        raise HTTPException(status_code=401, detail="Invalid credentials")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("handler crashed")

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


def _engine():
    # Keep analysis out of the request path for these tests
    return make_engine(make_settings(analysis_batch_size=1000, failed_attempts_trigger=1000,
                                     user_agent_trigger=1000))


def _headers(ip: str = CLIENT_IP, **extra):
    return {"X-Forwarded-For": f"{ip}, 10.0.0.1", **extra}


class TestIPRiskMiddleware:
    """Test blocking and activity recording on the request path."""

    def test_allowed_request_is_recorded(self):
        engine = _engine()
        client = TestClient(_app(engine))

        response = client.get("/", headers=_headers(**{"User-Agent": "pytest-agent"}))

        assert response.status_code == 200
        record = engine.activity.get(CLIENT_IP)
        assert record.request_count == 1
        assert record.failed_attempts == 0
        assert record.user_agents == {"pytest-agent"}
        assert record.endpoints == {"/"}

    def test_failed_authentication_counts_as_failure(self):
        engine = _engine()
        client = TestClient(_app(engine))

        response = client.post("/login", headers=_headers())

        assert response.status_code == 401
        assert engine.activity.get(CLIENT_IP).failed_attempts == 1

    def test_blocked_ip_rejected(self):
        engine = _engine()
        engine.block_ip(CLIENT_IP, "manual")
        client = TestClient(_app(engine))

        response = client.get("/", headers=_headers())

        assert response.status_code == 403
        assert response.json() == {"detail": "Access denied"}
        assert engine.activity.get(CLIENT_IP) is None

    def test_custom_blocked_status_code(self):
        engine = _engine()
        engine.block_ip(CLIENT_IP, "manual")
        client = TestClient(_app(engine, blocked_status_code=429))

        assert client.get("/", headers=_headers()).status_code == 429

    def test_other_ips_unaffected(self):
        engine = _engine()
        engine.block_ip(CLIENT_IP, "manual")
        client = TestClient(_app(engine))

        assert client.get("/", headers=_headers("198.51.100.201")).status_code == 200

    def test_ignored_paths_bypass_checks(self):
        engine = _engine()
        engine.block_ip(CLIENT_IP, "manual")
        client = TestClient(_app(engine, ignore_paths=["/health"]))

        assert client.get("/health", headers=_headers()).status_code == 200
        assert engine.activity.get(CLIENT_IP) is None

    def test_forwarded_headers_ignored_unless_trusted(self):
        engine = _engine()
        engine.block_ip(CLIENT_IP, "manual")
        client = TestClient(_app(engine, trust_forwarded_headers=False))

        response = client.get("/", headers=_headers())

        # The test client's own address is not an IP, so checks are skipped
        assert response.status_code == 200
        assert len(engine.activity) == 0

    def test_real_ip_header(self):
        engine = _engine()
        client = TestClient(_app(engine))

        client.get("/", headers={"X-Real-IP": "203.0.113.200"})

        assert engine.activity.get("203.0.113.200").request_count == 1

    def test_server_error_is_recorded(self):
        engine = _engine()
        client = TestClient(_app(engine, failure_status_codes=(401, 403, 500)), raise_server_exceptions=False)

        response = client.get("/boom", headers=_headers())

        assert response.status_code == 500
        record = engine.activity.get(CLIENT_IP)
        assert record.request_count == 1
        assert record.failed_attempts == 1
        assert record.endpoints == {"/boom"}
