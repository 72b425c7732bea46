from starlette.middleware.base import BaseHTTPMiddleware

from sceneaccess.core.metrics import http_requests_total


def route_template(request) -> str:
    """
    Template of the route the router resolved ("/api/access/check"), or
    "unmatched". Read after the request ran, when the router has set scope["route"].
    """
    route = request.scope.get("route")
    if route is None:
        return "unmatched"
    return getattr(route, "path_format", None) or getattr(route, "path", None) or "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count every response by method, route template and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        http_requests_total.inc(
            method=request.method.upper(),
            route=route_template(request),
            status=str(response.status_code),
        )
        return response
