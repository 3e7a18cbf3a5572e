# backend/farmgrid/core/middleware.py
import time
import uuid

from farmgrid.core.logger import logger


class RequestLoggingMiddleware:
    """
    ASGI middleware: assigns X-Request-ID and logs each request twice, once
    on arrival and once on completion with status and duration. Unhandled
    exceptions are logged with stack trace before being re-raised.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        request_id = str(uuid.uuid4())
        scope["request_id"] = request_id
        method = scope.get("method", "")
        path = scope.get("path", "")
        status = {"code": None}
        start = time.perf_counter()

        logger.info(
            "Request started",
            extra={"request_id": request_id, "method": method, "path": path},
        )

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                status["code"] = message.get("status", 0)
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode("utf-8")))
                message["headers"] = headers
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            logger.exception(
                "Unhandled exception in request",
                extra={"request_id": request_id, "method": method, "path": path},
            )
            raise

        logger.info(
            "Request completed",
            extra={
                "request_id": request_id,
                "method": method,
                "path": path,
                "status_code": status["code"],
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
