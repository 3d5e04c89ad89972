import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from tessera_analytics.core.logging import latency_bucket_ms, request_id_ctx_var
from tessera_analytics.core.metrics import http_requests_total, normalize_path

logger = logging.getLogger("tessera")


def _organization_from_path(path: str):
    # /api/<area>/<org_id>/...
    parts = [p for p in path.split("/") if p]
    if len(parts) >= 3 and parts[0] == "api" and parts[1] in ("views", "insights"):
        return parts[2]
    return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request_id, count the request and log its completion."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid
        status = getattr(response, "status_code", None) or 0
        route = normalize_path(request.url.path)
        http_requests_total.inc(labels={
            "method": request.method.upper(),
            "path": route,
            "status": str(status),
        })
        services = getattr(request.app.state, "services", None)
        if services is not None:
            await services.monitoring.check_response_time(f"{request.method.upper()} {route}", duration_ms)
        logger.info(
            "request.complete",
            extra={
                "request_id": rid,
                "organization_id": _organization_from_path(request.url.path),
                "path": request.url.path,
                "method": request.method,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "latency_bucket": latency_bucket_ms(duration_ms),
            },
        )
        return response
