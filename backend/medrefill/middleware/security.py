"""
Request guard and response hardening for the refill API.

- Mutations on the JSON endpoints must send ``application/json``
- Action endpoints (approve, dispatch, delivered, backfill, reminder trigger)
  take no body and are matched by name, so they skip the Content-Type check
- Bodies over 1 MB are refused before they reach a route
- Every response gets hardening headers; the live tracking stream additionally
  disables proxy buffering
"""

import logging
import re

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 1_048_576

MUTATION_METHODS = {"POST", "PUT", "PATCH"}

_UUID = r"[0-9a-fA-F-]{36}"

# (method, path) pairs whose handlers read no request body
ACTION_ROUTES: tuple[tuple[str, re.Pattern], ...] = (
    ("PUT", re.compile(rf"^/api/pharmacist/refill-requests/{_UUID}/approve$")),
    ("POST", re.compile(rf"^/api/refills/{_UUID}/dispatch$")),
    ("POST", re.compile(rf"^/api/tracking/{_UUID}/delivered$")),
    ("POST", re.compile(rf"^/api/tracking/{_UUID}/backfill$")),
    ("POST", re.compile(r"^/api/admin/refill-reminders/trigger$")),
)

STREAM_PATH = re.compile(rf"^/api/tracking/subscribe/{_UUID}$")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Cache-Control": "no-store",
}

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def is_action_route(method: str, path: str) -> bool:
    return any(method == m and pattern.match(path) for m, pattern in ACTION_ROUTES)


def requires_json(method: str, path: str) -> bool:
    return method in MUTATION_METHODS and path.startswith("/api/") and not is_action_route(method, path)


def response_headers_for(path: str) -> dict[str, str]:
    headers = dict(SECURITY_HEADERS)
    if STREAM_PATH.match(path):
        headers.update(STREAM_HEADERS)
    return headers


def _has_body(request: Request) -> bool:
    if "chunked" in request.headers.get("transfer-encoding", "").lower():
        return True
    content_length = request.headers.get("content-length")
    return content_length is not None and content_length != "0"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        method = request.method

        content_length = request.headers.get("content-length")
        if content_length is not None:
            try:
                if int(content_length) > MAX_BODY_SIZE:
                    logger.warning("Request body too large: %s bytes from %s %s", content_length, method, path)
                    return JSONResponse(
                        status_code=413,
                        content={"detail": "Request body too large. Maximum size is 1 MB."},
                    )
            except ValueError:
                return JSONResponse(status_code=400, content={"detail": "Malformed Content-Length header"})

        if requires_json(method, path) and _has_body(request):
            content_type = request.headers.get("content-type", "")
            if "application/json" not in content_type:
                logger.warning("Invalid Content-Type '%s' for %s %s", content_type, method, path)
                return JSONResponse(
                    status_code=415,
                    content={"detail": "Unsupported Media Type. Content-Type must be application/json."},
                )

        response = await call_next(request)

        for header, value in response_headers_for(path).items():
            response.headers[header] = value
        return response
