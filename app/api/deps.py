import secrets
from typing import Optional
from urllib.parse import urlparse

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.services.analytics import AnalyticsService
from app.services.attribution import AttributionService
from app.services.insights import InsightService
from app.services.runtime import AnalyticsRuntime

# Admin key header name
ADMIN_KEY_HEADER = "X-Admin-Key"

admin_key_header = APIKeyHeader(name=ADMIN_KEY_HEADER, auto_error=False)


def get_runtime(request: Request) -> AnalyticsRuntime:
    """The analytics runtime built by the application lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Analytics runtime is not running",
        )
    return runtime


def get_analytics_service(runtime: AnalyticsRuntime = Depends(get_runtime)) -> AnalyticsService:
    return runtime.analytics


def get_attribution_service(runtime: AnalyticsRuntime = Depends(get_runtime)) -> AttributionService:
    return runtime.attribution


def get_insight_service(runtime: AnalyticsRuntime = Depends(get_runtime)) -> InsightService:
    return runtime.insights


def require_admin(api_key: Optional[str] = Depends(admin_key_header)) -> None:
    """
    Guard for privileged endpoints (counter reset, retention cleanup, manual attribution).

    Disabled entirely when ADMIN_API_KEY is not configured.
    """
    expected = settings.ADMIN_API_KEY
    if not expected or not api_key or not secrets.compare_digest(api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API key required",
        )


def get_client_ip(request: Request) -> Optional[str]:
    """Client IP, honouring the first X-Forwarded-For hop set by the proxy."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


def get_site_host(request: Request) -> Optional[str]:
    """Host of the page that sent the beacon: the Origin header, else the host the API was reached on."""
    origin = request.headers.get("origin")
    if origin:
        host = urlparse(origin).hostname
        if host:
            return host
    return request.url.hostname
