import logging
import time
import uuid

from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from billing_engine.config import settings
from billing_engine.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

logger = logging.getLogger(__name__)

# Health checks and scrapes would drown the access log.
_QUIET_PATHS = frozenset({"/health", "/metrics"})


def _bearer_subject(request: Request) -> str | None:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip() or not settings.jwt_secret:
        return None
    try:
        claims = jwt.decode(
            token.strip(), settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except JWTError:
        return None
    subject = claims.get("sub")
    return str(subject) if subject else None


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Request id propagation, request metrics and one access log line per request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            self._observe(request, request_id, 500, started, failed=True)
            raise
        self._observe(request, request_id, response.status_code, started)
        response.headers["x-request-id"] = request_id
        return response

    @staticmethod
    def _observe(
        request: Request, request_id: str, status_code: int, started: float, failed: bool = False
    ) -> None:
        elapsed = time.monotonic() - started
        path = _route_template(request)
        labels = (request.method, path, str(status_code))
        REQUEST_COUNT.labels(*labels).inc()
        REQUEST_LATENCY.labels(*labels).observe(elapsed)
        if status_code >= 500:
            REQUEST_ERRORS.labels(*labels).inc()
        if path in _QUIET_PATHS and not failed:
            return
        extra = {
            "request_id": request_id,
            "actor_id": getattr(request.state, "actor_id", None) or _bearer_subject(request),
            "path": path,
            "method": request.method,
            "status": status_code,
            "duration_ms": round(elapsed * 1000.0, 2),
        }
        if failed:
            logger.exception("request_failed", extra=extra)
        else:
            logger.info("request_completed", extra=extra)
