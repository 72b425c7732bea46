import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from sceneaccess.core.logging import latency_bucket_ms, request_id_ctx_var


logger = logging.getLogger("sceneaccess.http")

MAX_CLIENT_REQUEST_ID = 128


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Bind a request id for the duration of the request.

    A client-supplied x-request-id is reused (truncated); otherwise a uuid4 is
    minted. The id is echoed on the response and stamped on every log record
    emitted while the request runs, including the final request.complete line.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    def _request_id(self, request) -> str:
        supplied = request.headers.get(self.header_name, "").strip()
        return supplied[:MAX_CLIENT_REQUEST_ID] or str(uuid4())

    async def dispatch(self, request, call_next):
        rid = self._request_id(request)
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
            logger.info(
                "request.complete",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
