"""Request tracing middleware for the orchestrator API."""

import re
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .logging import get_logger, set_logging_context, clear_logging_context


logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Resource ids worth carrying into every log line of a request
_RESOURCE_PATTERNS = {
    "workflow_id": re.compile(r"/workflows/(?!validate$)([^/]+)"),
    "instance_id": re.compile(r"/instances/([^/]+)"),
    "step_id": re.compile(r"/instances/[^/]+/steps/([^/]+)"),
    "trigger_id": re.compile(r"/triggers/([^/]+)"),
}


def resource_ids(path: str) -> Dict[str, str]:
    """Ids of the workflow, instance, step or trigger a request path addresses."""
    found = {}
    for name, pattern in _RESOURCE_PATTERNS.items():
        match = pattern.search(path)
        if match:
            found[name] = match.group(1)
    return found


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id, logs its outcome and flags slow requests.

    A caller-supplied ``X-Request-ID`` is kept so a request can be followed
    across services; otherwise one is generated. Engine errors are already
    mapped to HTTP responses by the endpoints, so only unexpected errors are
    turned into a 500 here.
    """

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        path = request.url.path
        start_time = time.perf_counter()

        set_logging_context(request_id=request_id, method=request.method, path=path, **resource_ids(path))
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Unexpected error: {request.method} {path} - {type(e).__name__}: {e}", exc_info=True)
            response = JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {
                        "error_type": type(e).__name__,
                        "timestamp": datetime.now(timezone.utc).isoformat()
                    },
                    "request_id": request_id
                }
            )
        finally:
            clear_logging_context()

        duration = time.perf_counter() - start_time
        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request: {request.method} {path} took {duration:.3f}s "
                f"(threshold: {self.slow_request_threshold}s)"
            )
        elif response.status_code >= 400:
            logger.info(f"{request.method} {path} - Status: {response.status_code} - Duration: {duration:.3f}s")
        else:
            logger.debug(f"{request.method} {path} - Status: {response.status_code} - Duration: {duration:.3f}s")

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
