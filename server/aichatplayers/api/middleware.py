from __future__ import annotations

import logging
import time
from datetime import datetime

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send


LOGGER = logging.getLogger("aichatplayers.api.access")

REQUEST_ID_HEADER = "X-Request-Id"
_LOGGED_BODY_LIMIT = 4096


def generate_request_id() -> str:
    return datetime.now().strftime("%Y%m%dT%H%M%S.%f")


def _body_for_log(body: bytes) -> str:
    text = body[:_LOGGED_BODY_LIMIT].decode("utf-8", errors="replace")
    if len(body) > _LOGGED_BODY_LIMIT:
        text += "...(truncated)"
    return text


class RequestContextMiddleware:
    """Request id, body size limit and request logging for every HTTP call.

    The body is buffered up to ``body_limit_bytes`` and replayed to the app,
    so it can be logged when the response is an error.
    """

    def __init__(self, app: ASGIApp, body_limit_bytes: int = 1 << 20) -> None:
        self.app = app
        self.body_limit_bytes = body_limit_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        request_id = headers.get(REQUEST_ID_HEADER) or generate_request_id()
        scope.setdefault("state", {})["request_id"] = request_id
        method = scope.get("method", "")
        path = scope.get("path", "")
        client = scope.get("client")
        remote_addr = f"{client[0]}:{client[1]}" if client else ""
        user_agent = headers.get("user-agent", "")
        started = time.perf_counter()

        status = 500
        sent_bytes = 0

        async def send_wrapper(message: Message) -> None:
            nonlocal status, sent_bytes
            if message["type"] == "http.response.start":
                status = message["status"]
                MutableHeaders(scope=message)[REQUEST_ID_HEADER] = request_id
            elif message["type"] == "http.response.body":
                sent_bytes += len(message.get("body", b""))
            await send(message)

        body, too_large = await self._read_body(headers, receive)
        if too_large:
            response = JSONResponse({"error": "body_too_large"}, status_code=413)
            await response(scope, receive, send_wrapper)
            self._log_access(request_id, method, path, status, sent_bytes, started, remote_addr, user_agent)
            LOGGER.warning(
                "request_id=%s error_request method=%s path=%s status=%s limit_bytes=%s",
                request_id,
                method,
                path,
                status,
                self.body_limit_bytes,
            )
            return

        if LOGGER.isEnabledFor(logging.DEBUG):
            LOGGER.debug(
                "request_id=%s incoming_request method=%s path=%s query=%s content_type=%s body=%s",
                request_id,
                method,
                path,
                scope.get("query_string", b"").decode("latin-1"),
                headers.get("content-type", ""),
                _body_for_log(body),
            )

        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if not replayed:
                replayed = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        try:
            await self.app(scope, replay, send_wrapper)
        except Exception:
            status = 500
            LOGGER.exception("request_id=%s unhandled_error method=%s path=%s", request_id, method, path)
            raise
        finally:
            self._log_access(request_id, method, path, status, sent_bytes, started, remote_addr, user_agent)

        if status >= 400:
            log = LOGGER.error if status >= 500 else LOGGER.warning
            log(
                "request_id=%s error_request method=%s path=%s status=%s bytes=%s body=%s",
                request_id,
                method,
                path,
                status,
                sent_bytes,
                _body_for_log(body),
            )

    async def _read_body(self, headers: Headers, receive: Receive) -> tuple[bytes, bool]:
        declared = headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.body_limit_bytes:
            return b"", True

        chunks: list[bytes] = []
        size = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] != "http.request":
                break
            chunk = message.get("body", b"")
            size += len(chunk)
            if size > self.body_limit_bytes:
                return b"", True
            chunks.append(chunk)
            more_body = message.get("more_body", False)
        return b"".join(chunks), False

    def _log_access(
        self,
        request_id: str,
        method: str,
        path: str,
        status: int,
        sent_bytes: int,
        started: float,
        remote_addr: str,
        user_agent: str,
    ) -> None:
        LOGGER.info(
            "request_id=%s method=%s path=%s status=%s bytes=%s duration_ms=%d remote_addr=%s user_agent=%r",
            request_id,
            method,
            path,
            status,
            sent_bytes,
            (time.perf_counter() - started) * 1000.0,
            remote_addr,
            user_agent,
        )
