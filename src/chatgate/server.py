"""
Lightweight HTTP server: health endpoint and the REST transport.

Uses raw asyncio — no web framework needed.
"""

import asyncio
import json
import logging
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

from chatgate.protocol.identifiers import new_id
from chatgate.protocol.types import IncomingRequest, Platform, Source

if TYPE_CHECKING:
    from chatgate.gateway import Gateway

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 1024 * 1024
API_PREFIX = "/api/v1"


def _error(code: str, message: str) -> dict[str, Any]:
    return {"success": False, "error": {"code": code, "message": message}}


def _optional_id(value: Any) -> Any:
    """JSON numbers are accepted as ids; other non-strings are left for validation to reject."""
    if value is None or value == "":
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class GatewayServer:
    """
    Minimal HTTP server for the gateway.

    Routes:
    - GET  /health
    - POST /api/v1/messages
    - POST /api/v1/sessions
    - GET  /api/v1/sessions/{id}
    - GET  /api/v1/tools
    - GET  /api/v1/stats
    """

    def __init__(
        self,
        gateway: "Gateway",
        host: str = "0.0.0.0",
        port: int = 8080,
    ):
        self.gateway = gateway
        self._host = host
        self._port = port
        self._server: asyncio.Server | None = None

    async def dispatch(
        self,
        method: str,
        path: str,
        headers: dict[str, str] | None = None,
        body: bytes = b"",
    ) -> tuple[int, dict[str, Any]]:
        """Route one request. Returns (status code, JSON payload)."""
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        path = path.split("?", 1)[0].rstrip("/") or "/"

        if path == "/health":
            if method != "GET":
                return 405, _error("METHOD_NOT_ALLOWED", "Use GET")
            health = await self.gateway.health()
            return (503 if health["status"] == "unhealthy" else 200), health

        if path == f"{API_PREFIX}/messages":
            if method != "POST":
                return 405, _error("METHOD_NOT_ALLOWED", "Use POST")
            return await self._post_message(headers, body)

        if path == f"{API_PREFIX}/sessions":
            if method != "POST":
                return 405, _error("METHOD_NOT_ALLOWED", "Use POST")
            return await self._post_session(body)

        if path.startswith(f"{API_PREFIX}/sessions/"):
            if method != "GET":
                return 405, _error("METHOD_NOT_ALLOWED", "Use GET")
            session_id = path[len(f"{API_PREFIX}/sessions/") :]
            session = await self.gateway.get_session(session_id)
            if session is None:
                return 404, _error("SESSION_NOT_FOUND", f"No active session {session_id}")
            return 200, {"success": True, "data": session.to_dict()}

        if path == f"{API_PREFIX}/tools":
            if method != "GET":
                return 405, _error("METHOD_NOT_ALLOWED", "Use GET")
            capabilities = await self.gateway.list_capabilities()
            return 200, {"success": True, "data": {"tools": [c.to_dict() for c in capabilities]}}

        if path == f"{API_PREFIX}/stats":
            if method != "GET":
                return 405, _error("METHOD_NOT_ALLOWED", "Use GET")
            return 200, {"success": True, "data": await self.gateway.stats()}

        return 404, _error("NOT_FOUND", "Not found")

    @staticmethod
    def _json_body(body: bytes) -> dict[str, Any] | None:
        try:
            data = json.loads(body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None

    async def _post_message(
        self, headers: dict[str, str], body: bytes
    ) -> tuple[int, dict[str, Any]]:
        data = self._json_body(body)
        if data is None:
            return 400, _error("PARSING_ERROR", "Body must be a JSON object")

        message = data.get("message")
        user_id = data.get("userId") or data.get("user_id")
        request = IncomingRequest(
            id=_optional_id(data.get("id")) or new_id("http"),
            source=Source.HTTP,
            user_id=str(user_id) if user_id is not None else "",
            content=message if isinstance(message, str) else "",
            chat_id=_optional_id(data.get("chatId", data.get("chat_id"))),
            session_id=_optional_id(data.get("sessionId", data.get("session_id"))),
            headers=headers,
            raw_payload=data,
        )

        outcome = await self.gateway.handle(request)
        if outcome.reply is not None:
            return outcome.status_code, outcome.reply
        payload = {
            "success": False,
            "request_id": outcome.request_id,
            "error": outcome.error.to_dict() if outcome.error else None,
        }
        return outcome.status_code, payload

    async def _post_session(self, body: bytes) -> tuple[int, dict[str, Any]]:
        data = self._json_body(body)
        if data is None:
            return 400, _error("PARSING_ERROR", "Body must be a JSON object")

        user_id = data.get("userId") or data.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            return 400, _error("VALIDATION_ERROR", "userId is required")
        try:
            platform = Platform(data.get("platform", Platform.REST_API.value))
        except ValueError:
            return 400, _error("PLATFORM_NOT_SUPPORTED", f"Unknown platform {data.get('platform')!r}")

        expiration = data.get("expirationMinutes")
        if expiration is not None and (not isinstance(expiration, int) or expiration < 1):
            return 400, _error("VALIDATION_ERROR", "expirationMinutes must be a positive integer")

        session = await self.gateway.create_session(
            user_id,
            platform,
            metadata=data.get("metadata") or {},
            expiration_minutes=expiration,
        )
        return 201, {"success": True, "data": session.to_dict()}

    async def _handle_request(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle an incoming HTTP request."""
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=5)
            parts = request_line.decode("utf-8", errors="replace").split()
            if len(parts) < 2:
                return

            method, path = parts[0].upper(), parts[1]
            headers: dict[str, str] = {}
            while True:
                line = await asyncio.wait_for(reader.readline(), timeout=5)
                if line in (b"\r\n", b"\n", b""):
                    break
                name, _, value = line.decode("utf-8", errors="replace").partition(":")
                headers[name.strip().lower()] = value.strip()

            peer = writer.get_extra_info("peername")
            if peer and "x-forwarded-for" not in headers:
                headers["x-real-ip"] = str(peer[0])

            length = int(headers.get("content-length", "0") or 0)
            if length > MAX_BODY_BYTES:
                status, payload = 413, _error("MESSAGE_TOO_LARGE", "Request body too large")
            else:
                body = await asyncio.wait_for(reader.readexactly(length), timeout=10) if length else b""
                status, payload = await self.dispatch(method, path, headers, body)

            await self._write(writer, status, payload)
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, ValueError) as e:
            logger.debug("Dropped malformed HTTP request: %s", e)
        except Exception:
            logger.exception("HTTP handler failed")
            await self._write(writer, 500, _error("INTERNAL_ERROR", "Internal server error"))
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    @staticmethod
    async def _write(writer: asyncio.StreamWriter, status: int, payload: dict[str, Any]) -> None:
        body = json.dumps(payload, indent=2, default=str).encode("utf-8")
        reason = HTTPStatus(status).phrase
        head = (
            f"HTTP/1.1 {status} {reason}\r\n"
            "Content-Type: application/json\r\n"
            f"Content-Length: {len(body)}\r\n"
            "Connection: close\r\n"
            "\r\n"
        )
        writer.write(head.encode() + body)
        await writer.drain()

    async def start(self) -> None:
        """Start the HTTP server and serve until cancelled."""
        self._server = await asyncio.start_server(
            self._handle_request,
            self._host,
            self._port,
        )
        logger.info("HTTP API listening on http://%s:%s", self._host, self._port)
        await self._server.serve_forever()

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
