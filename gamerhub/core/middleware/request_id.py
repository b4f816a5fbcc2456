import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from gamerhub.core.logging import LOGGER_NAME, latency_bucket_ms, request_id_ctx_var


logger = logging.getLogger(LOGGER_NAME)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Bind a request id for the duration of each request.

    An incoming ``x-request-id`` is reused so client and server logs line up;
    otherwise a fresh uuid4 is minted. The id is echoed on the response.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)

        response.headers[self.header_name] = rid
        status = getattr(response, "status_code", None)
        logger.log(
            logging.WARNING if status and status >= 500 else logging.INFO,
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "user_id": request.headers.get("x-user-id"),
                "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
            },
        )
        return response
