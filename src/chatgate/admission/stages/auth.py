"""
Authentication — presence and shape checks per source.

No credentials are issued or verified against an identity provider.
"""

import hmac
import re
from dataclasses import replace
from typing import Callable

from chatgate.admission.models import Accept, StageResult
from chatgate.admission.stages.base import Stage
from chatgate.config.schema import AuthConfig
from chatgate.protocol.errors import AuthenticationFailedError
from chatgate.protocol.types import IncomingRequest, Source

_NUMERIC_RE = re.compile(r"^\d+$")
_CHAT_ID_RE = re.compile(r"^-?\d+$")
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _header(request: IncomingRequest, name: str) -> str | None:
    for key, value in request.headers.items():
        if key.lower() == name:
            return value
    return None


class AuthenticationStage(Stage):
    """Accepts everything while auth is disabled in config."""

    name = "authentication"
    order = 2

    def __init__(self, config: AuthConfig | None = None):
        super().__init__(enabled=True)
        self.config = config or AuthConfig()
        self._checks: dict[Source, Callable[[IncomingRequest], str]] = {
            Source.TELEGRAM: self._check_telegram,
            Source.HTTP: self._check_http,
            Source.CLI: self._check_cli,
        }

    async def process(self, request: IncomingRequest) -> StageResult:
        if not self.config.enabled:
            return Accept(request)

        if not request.user_id or not request.content:
            raise AuthenticationFailedError(
                "User ID and content are required",
                code="INVALID_REQUEST",
                status_code=400,
            )

        check = self._checks.get(request.source)
        if check is None:
            raise AuthenticationFailedError(
                f"Unknown request source: {request.source}", code="UNKNOWN_SOURCE"
            )
        method = check(request)

        return Accept(
            replace(
                request,
                metadata={
                    **request.metadata,
                    "auth": {"authenticated": True, "method": method},
                },
            )
        )

    def _check_telegram(self, request: IncomingRequest) -> str:
        if not _NUMERIC_RE.match(request.user_id):
            raise AuthenticationFailedError(
                "Telegram user ID must be numeric", code="INVALID_USER_ID"
            )
        if request.chat_id and not _CHAT_ID_RE.match(request.chat_id):
            raise AuthenticationFailedError(
                "Invalid Telegram chat ID format", code="INVALID_CHAT_ID"
            )
        return "telegram"

    def _check_http(self, request: IncomingRequest) -> str:
        if self.config.api_keys:
            key = _header(request, "x-api-key")
            if key is None:
                authorization = _header(request, "authorization") or ""
                if authorization.lower().startswith("bearer "):
                    key = authorization[7:].strip()
            if not key:
                raise AuthenticationFailedError("API key is required", code="MISSING_API_KEY")
            if not any(hmac.compare_digest(key, valid) for valid in self.config.api_keys):
                raise AuthenticationFailedError("Invalid API key", code="INVALID_API_KEY")
        if request.session_id and not _SESSION_ID_RE.match(request.session_id):
            raise AuthenticationFailedError(
                "Invalid session ID format", code="INVALID_SESSION_ID"
            )
        return "api_key" if self.config.api_keys else "anonymous"

    def _check_cli(self, request: IncomingRequest) -> str:
        if not request.user_id.startswith(self.config.cli_user_prefix):
            raise AuthenticationFailedError(
                f"CLI user ID must start with '{self.config.cli_user_prefix}'",
                code="INVALID_CLI_USER_ID",
            )
        return "cli"
