import json
import logging
import time
import uuid
from typing import Any, Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One JSON line per HTTP request, tagged with a request id.

    The id is taken from the incoming X-Request-ID header or generated, and
    echoed on the response. Only the path is logged: webhook query strings
    carry the verify token.
    """

    def __init__(self, app, logger=None):
        super().__init__(app)
        self.logger = logger or logging.getLogger("bkbot.http")

    async def dispatch(self, request: Request, call_next):
        start = time.time()
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        status = 500
        try:
            response: Response = await call_next(request)
            status = response.status_code
            response.headers[REQUEST_ID_HEADER] = request_id
        finally:
            entry: Dict[str, Any] = {
                "ts": int(time.time() * 1000),
                "request_id": request_id,
                "ip": (request.client.host if request.client else None) or "",
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "duration_ms": int((time.time() - start) * 1000),
            }
            self.logger.info(json.dumps(entry))
        return response
