"""Request-path integration for Starlette and FastAPI applications.

``IPRiskMiddleware`` rejects requests from blocked IPs and feeds every other
request into the engine as activity. Risk analysis never runs inline: the
engine schedules it in the background when the recorded activity warrants it.

Example:
    app = FastAPI()
    engine = IPRiskEngine()
    app.add_middleware(IPRiskMiddleware, engine=engine, trust_forwarded_headers=True)
"""

import logging
from typing import Iterable, Optional, Set

from fastapi import Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from ip_risk_shield.engine import IPRiskEngine
from ip_risk_shield.exceptions import InvalidIPAddressError
from ip_risk_shield.models import ActivityEvent, validate_ip

logger = logging.getLogger(__name__)

FORWARDED_HEADERS = ("x-forwarded-for", "x-real-ip", "x-client-ip")


class IPRiskMiddleware(BaseHTTPMiddleware):
    """Blocks denied IPs and records request activity."""

    def __init__(
        self,
        app: ASGIApp,
        engine: IPRiskEngine,
        failure_status_codes: Iterable[int] = (401, 403),
        trust_forwarded_headers: bool = False,
        ignore_paths: Optional[Iterable[str]] = None,
        blocked_status_code: int = status.HTTP_403_FORBIDDEN,
    ):
        super().__init__(app)
        self.engine = engine
        self.failure_status_codes: Set[int] = set(failure_status_codes)
        self.trust_forwarded_headers = trust_forwarded_headers
        self.ignore_paths: Set[str] = set(ignore_paths or [])
        self.blocked_status_code = blocked_status_code

    def _extract_client_ip(self, request: Request) -> Optional[str]:
        """Extract client IP address from request."""
        if self.trust_forwarded_headers:
            for header in FORWARDED_HEADERS:
                value = request.headers.get(header)
                if value:
                    # X-Forwarded-For can contain multiple IPs
                    return value.split(",")[0].strip()

        return request.client.host if request.client else None

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self.ignore_paths:
            return await call_next(request)

        try:
            ip = validate_ip(self._extract_client_ip(request))
        except InvalidIPAddressError:
            logger.debug(f"Skipping IP risk checks for unparseable client address on {request.url.path}")
            return await call_next(request)

        if self.engine.is_blocked(ip):
            logger.info(f"Rejected request from blocked IP {ip} to {request.url.path}")
            return JSONResponse(
                status_code=self.blocked_status_code,
                content={"detail": "Access denied"},
            )

        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            self.engine.record_activity(
                ip,
                ActivityEvent(
                    failed=status_code in self.failure_status_codes,
                    user_agent=request.headers.get("user-agent"),
                    endpoint=request.url.path,
                    status_code=status_code,
                ),
            )
