"""
ASGI middleware applying a TrustGuard to every request.

Usage with Starlette or FastAPI:

    app.add_middleware(CloudflareGuardMiddleware, config=GuardConfig())

When built from a config, the configuration is validated at construction
and the guard (with its initial IP list fetch) is created on lifespan
startup, or on the first request if the server does not run the lifespan
protocol. A failed startup is reported as lifespan.startup.failed. After
a failed build, requests are answered 500 and the build is not retried
for MIN_REFRESH_SECONDS.
"""

import asyncio
import time
from http import HTTPStatus
from typing import Optional

from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from starlette.websockets import WebSocketClose

from .audit_logger import AuditLogger
from .cloudflare_client import IPListFetcher
from .config import GuardConfig
from .enums import Decision
from .exceptions import GuardError
from .guard import TrustGuard, create_guard
from .ip_checker import MIN_REFRESH_SECONDS, Clock

# Policy violation
WS_CLOSE_POLICY_VIOLATION = 1008


class CloudflareGuardMiddleware:
    """Rejects requests from untrusted peers and rewrites forwarded-for."""

    COMPONENT = "middleware"

    def __init__(
        self,
        app: ASGIApp,
        guard: Optional[TrustGuard] = None,
        config: Optional[GuardConfig] = None,
        fetcher: Optional[IPListFetcher] = None,
        logger: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        """
        Args:
            app: The downstream ASGI application
            guard: A ready guard; takes precedence over config
            config: Options used to build the guard lazily
            fetcher: Optional IP list source passed to create_guard
            logger: Optional audit logger
            clock: Time source for build backoff and the refreshing checker

        Raises:
            ValueError: If neither guard nor config is given
            ConfigError: If config is given and malformed
        """
        if guard is None and config is None:
            raise ValueError("either guard or config is required")
        if guard is None:
            config.validate()
        self.app = app
        self._guard = guard
        self._config = config
        self._fetcher = fetcher
        self._logger = logger
        self._clock = clock
        self._guard_lock = asyncio.Lock()
        self._build_failed_at: Optional[float] = None
        self._build_error: Optional[GuardError] = None

    @classmethod
    def from_config(
        cls,
        app: ASGIApp,
        config: GuardConfig,
        logger: Optional[AuditLogger] = None,
    ) -> "CloudflareGuardMiddleware":
        return cls(app, config=config, logger=logger)

    def _now(self) -> float:
        return (self._clock or time.monotonic)()

    async def get_guard(self) -> TrustGuard:
        """
        Return the guard, creating it from config on first use.

        Raises:
            ConfigError: If the configuration is malformed
            FetchError: If the initial IP list fetch fails, or failed less
                than MIN_REFRESH_SECONDS ago
        """
        if self._guard is not None:
            return self._guard
        async with self._guard_lock:
            if self._guard is not None:
                return self._guard

            error = self._build_error
            if error is not None and self._now() - self._build_failed_at < MIN_REFRESH_SECONDS:
                raise type(error)(code=error.code, message=error.message, details=error.details)

            try:
                self._guard = await create_guard(
                    self._config,
                    fetcher=self._fetcher,
                    clock=self._clock,
                    logger=self._logger,
                )
            except GuardError as e:
                self._build_failed_at = self._now()
                self._build_error = e
                if self._logger:
                    self._logger.log_error(
                        self.COMPONENT,
                        "Failed to build guard",
                        error=e,
                        additional_data={"retry_in_seconds": MIN_REFRESH_SECONDS},
                    )
                raise

            self._build_error = None
            return self._guard

    async def aclose(self) -> None:
        if self._guard is not None:
            await self._guard.aclose()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "lifespan":
            await self._lifespan(scope, receive, send)
            return

        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        try:
            guard = await self.get_guard()
        except GuardError:
            await self._reject(Decision.SERVER_ERROR, scope, receive, send)
            return

        client = scope.get("client")
        client_ip = client[0] if client else None
        headers = [
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in scope.get("headers", [])
        ]

        result = await guard.evaluate(client_ip, headers)
        if not result.allowed:
            await self._reject(result.decision, scope, receive, send)
            return

        scope = dict(scope)
        scope["headers"] = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in result.headers
        ]
        await self.app(scope, receive, send)

    async def _reject(self, decision: Decision, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "websocket":
            await WebSocketClose(code=WS_CLOSE_POLICY_VIOLATION)(scope, receive, send)
            return

        code = decision.status_code
        response = PlainTextResponse(HTTPStatus(code).phrase, status_code=code)
        await response(scope, receive, send)

    async def _lifespan(self, scope: Scope, receive: Receive, send: Send) -> None:
        startup_error: Optional[GuardError] = None

        async def wrapped_receive() -> Message:
            nonlocal startup_error
            message = await receive()
            if message["type"] == "lifespan.startup" and self._config is not None:
                try:
                    await self.get_guard()
                except GuardError as e:
                    startup_error = e
            elif message["type"] == "lifespan.shutdown":
                await self.aclose()
            return message

        async def wrapped_send(message: Message) -> None:
            # Guard build failure replaces the downstream startup completion
            if message["type"] == "lifespan.startup.complete" and startup_error is not None:
                message = {"type": "lifespan.startup.failed", "message": str(startup_error)}
            await send(message)

        await self.app(scope, wrapped_receive, wrapped_send)
