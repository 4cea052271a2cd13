"""HTTP access log middleware.

Logs method, path, status and wall time for each request on the
``agency.access`` logger, with the error message on 4xx/5xx responses.
"""

import json
import logging
import time

from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger("agency.access")

# Long-lived or noisy endpoints
_SKIP_PREFIXES = ("/health", "/api/events/stream")


class AccessLogMiddleware:
    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path: str = scope.get("path", "")
        if path.startswith(_SKIP_PREFIXES):
            await self.app(scope, receive, send)
            return

        method: str = scope.get("method", "?")
        t0 = time.perf_counter()
        status_code = 0
        error_detail = ""

        async def send_wrapper(message: dict):
            nonlocal status_code, error_detail
            if message["type"] == "http.response.start":
                status_code = message.get("status", 0)
            elif message["type"] == "http.response.body" and status_code >= 400:
                body_bytes = message.get("body", b"")
                if body_bytes:
                    try:
                        error_detail = str(json.loads(body_bytes).get("error", ""))[:200]
                    except (ValueError, AttributeError):
                        pass
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            if status_code == 0:
                status_code = 500
            raise
        finally:
            wall_ms = (time.perf_counter() - t0) * 1000
            _emit(method, path, status_code, wall_ms, error_detail)


def _emit(method: str, path: str, status_code: int, wall_ms: float, error_detail: str):
    line = f"{method} {path} {status_code} {wall_ms:.0f}ms"
    if error_detail:
        line += f" error={error_detail}"

    if status_code >= 500:
        logger.error(line)
    elif status_code >= 400:
        logger.warning(line)
    else:
        logger.info(line)
