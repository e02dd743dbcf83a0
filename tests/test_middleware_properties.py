"""
Tests for the ASGI middleware.

Requests go through httpx.ASGITransport into a Starlette app, with the
peer address set on the transport. Lifespan and websocket handling are
driven with raw ASGI messages.
"""

import asyncio

import httpx
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from cloudflare_guard.cidr import CIDRSet
from cloudflare_guard.config import GuardConfig
from cloudflare_guard.exceptions import ConfigError, FetchError
from cloudflare_guard.guard import TrustGuard
from cloudflare_guard.ip_checker import MIN_REFRESH_SECONDS, StaticIPChecker
from cloudflare_guard.middleware import CloudflareGuardMiddleware


TRUSTED = ["172.16.0.0/12", "2001:db8:2::/47"]


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubFetcher:
    """Fetcher returning a fixed result and counting calls."""

    def __init__(self, result) -> None:
        self.result = result
        self.calls = 0
        self.closed = False

    async def fetch_ips(self) -> CIDRSet:
        self.calls += 1
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result

    async def close(self) -> None:
        self.closed = True


async def echo(request: Request) -> JSONResponse:
    return JSONResponse({
        "forwarded_for": request.headers.getlist("x-forwarded-for"),
        "client_ip": request.headers.get("cf-connecting-ip"),
    })


def make_app(**middleware_kwargs) -> Starlette:
    app = Starlette(routes=[Route("/", echo)])
    app.add_middleware(CloudflareGuardMiddleware, **middleware_kwargs)
    return app


def static_guard(overwrite: bool = True) -> TrustGuard:
    return TrustGuard(StaticIPChecker.from_strings(TRUSTED), overwrite_forwarded_for=overwrite)


def request(app, peer: str, headers=None) -> httpx.Response:
    async def run():
        transport = httpx.ASGITransport(app=app, client=(peer, 42))
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            return await client.get("/", headers=headers)

    return asyncio.run(run())


class TestMiddlewareProperty:
    """
    Tests for HTTP requests through the middleware.

    **Feature: cloudflare-guard, Property 17: Decisions map to HTTP responses**
    """

    @given(peer=st.sampled_from([
        "172.16.1.1", "172.31.255.255", "2001:db8:2:2::1",
        "172.15.1.1", "10.0.0.1", "2001:db8:1:2::1",
    ]))
    @settings(max_examples=20, deadline=None)
    def test_trusted_peers_reach_the_app(self, peer: str) -> None:
        """
        Property 17: Decisions map to HTTP responses.

        *For any* peer address, the request SHALL reach the application iff
        the address is trusted, and SHALL be answered 403 otherwise.
        """
        app = make_app(guard=static_guard(overwrite=False))

        response = request(app, peer)

        if CIDRSet.from_strings(TRUSTED).contains(peer):
            assert response.status_code == 200
        else:
            assert response.status_code == 403
            assert response.text == "Forbidden"

    def test_forwarded_for_rewritten(self) -> None:
        app = make_app(guard=static_guard())

        response = request(app, "172.16.1.1", headers={
            "CF-Connecting-IP": "203.0.113.9",
            "X-Forwarded-For": "1.1.1.1, 2.2.2.2",
        })

        assert response.status_code == 200
        assert response.json() == {"forwarded_for": ["203.0.113.9"], "client_ip": "203.0.113.9"}

    def test_missing_client_ip_header_is_400(self) -> None:
        app = make_app(guard=static_guard())

        response = request(app, "172.16.1.1")

        assert response.status_code == 400
        assert response.text == "Bad Request"

    def test_unparsable_peer_is_400(self) -> None:
        app = make_app(guard=static_guard(overwrite=False))

        assert request(app, "testclient").status_code == 400

    def test_lazy_guard_from_config(self) -> None:
        fetcher = StubFetcher(CIDRSet.from_strings(["172.16.0.0/12"]))
        app = make_app(config=GuardConfig(overwrite_forwarded_for=False), fetcher=fetcher)

        async def run():
            transport = httpx.ASGITransport(app=app, client=("172.16.1.1", 42))
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                first = await client.get("/")
                second = await client.get("/")
            return first, second

        first, second = asyncio.run(run())

        assert first.status_code == 200
        assert second.status_code == 200
        assert fetcher.calls == 1

    def test_initial_fetch_failure_is_500(self) -> None:
        fetcher = StubFetcher(FetchError(code="network_error", message="Connection error"))
        app = make_app(config=GuardConfig(), fetcher=fetcher)

        response = request(app, "172.16.1.1")

        assert response.status_code == 500
        assert response.text == "Internal Server Error"

    def test_failed_build_is_not_retried_before_backoff(self) -> None:
        clock = FakeClock()
        fetcher = StubFetcher(FetchError(code="network_error", message="Connection error"))
        app = make_app(config=GuardConfig(overwrite_forwarded_for=False), fetcher=fetcher, clock=clock)

        async def run():
            transport = httpx.ASGITransport(app=app, client=("172.16.1.1", 42))
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                codes = []
                for _ in range(5):
                    codes.append((await client.get("/")).status_code)
                    clock.advance(10)
                assert codes == [500] * 5
                assert fetcher.calls == 1

                clock.advance(MIN_REFRESH_SECONDS)
                assert (await client.get("/")).status_code == 500
                assert fetcher.calls == 2

                fetcher.result = CIDRSet.from_strings(["172.16.0.0/12"])
                clock.advance(MIN_REFRESH_SECONDS + 1)
                assert (await client.get("/")).status_code == 200
                assert (await client.get("/")).status_code == 200
                assert fetcher.calls == 3

        asyncio.run(run())

    @pytest.mark.parametrize("config", [
        GuardConfig(trusted_cidrs=["garbage"]),
        GuardConfig(trusted_cidrs=["10.0.0.0/255.0.0.0"]),
        GuardConfig(refresh_interval="1 day"),
        GuardConfig(ips_endpoint="http://api.cloudflare.com/client/v4/ips"),
    ])
    def test_malformed_config_fails_at_construction(self, config: GuardConfig) -> None:
        with pytest.raises(ConfigError):
            CloudflareGuardMiddleware(echo, config=config)

    def test_guard_or_config_required(self) -> None:
        with pytest.raises(ValueError):
            CloudflareGuardMiddleware(echo)


class TestRawASGI:
    """Tests for lifespan and websocket scopes."""

    def test_lifespan_builds_guard_and_shuts_down(self) -> None:
        fetcher = StubFetcher(CIDRSet.from_strings(["172.16.0.0/12"]))
        sent = []

        async def inner(scope, receive, send):
            message = await receive()
            assert message["type"] == "lifespan.startup"
            assert fetcher.calls == 1
            await send({"type": "lifespan.startup.complete"})
            message = await receive()
            assert message["type"] == "lifespan.shutdown"
            await send({"type": "lifespan.shutdown.complete"})

        async def run():
            queue = asyncio.Queue()
            await queue.put({"type": "lifespan.startup"})
            await queue.put({"type": "lifespan.shutdown"})

            async def send(message):
                sent.append(message)

            middleware = CloudflareGuardMiddleware(inner, config=GuardConfig(), fetcher=fetcher)
            await middleware({"type": "lifespan"}, queue.get, send)

        asyncio.run(run())

        assert [m["type"] for m in sent] == ["lifespan.startup.complete", "lifespan.shutdown.complete"]
        # Caller-supplied fetchers stay open
        assert not fetcher.closed

    def test_lifespan_startup_failure_is_reported(self) -> None:
        fetcher = StubFetcher(FetchError(code="network_error", message="Connection error"))
        sent = []

        async def inner(scope, receive, send):
            message = await receive()
            assert message["type"] == "lifespan.startup"
            await send({"type": "lifespan.startup.complete"})

        async def run():
            queue = asyncio.Queue()
            await queue.put({"type": "lifespan.startup"})

            async def send(message):
                sent.append(message)

            middleware = CloudflareGuardMiddleware(inner, config=GuardConfig(), fetcher=fetcher)
            await middleware({"type": "lifespan"}, queue.get, send)

        asyncio.run(run())

        assert [m["type"] for m in sent] == ["lifespan.startup.failed"]
        assert sent[0]["message"] == "Connection error"
        assert fetcher.calls == 1

    def test_untrusted_websocket_is_closed(self) -> None:
        sent = []
        reached = []

        async def inner(scope, receive, send):
            reached.append(scope)

        async def run():
            async def receive():
                return {"type": "websocket.connect"}

            async def send(message):
                sent.append(message)

            middleware = CloudflareGuardMiddleware(inner, guard=static_guard(overwrite=False))
            scope = {"type": "websocket", "client": ("10.0.0.1", 1234), "headers": [], "path": "/ws"}
            await middleware(scope, receive, send)

        asyncio.run(run())

        assert reached == []
        assert sent[0]["type"] == "websocket.close"
        assert sent[0]["code"] == 1008

    def test_trusted_websocket_reaches_app(self) -> None:
        reached = []

        async def inner(scope, receive, send):
            reached.append(scope)

        async def run():
            middleware = CloudflareGuardMiddleware(inner, guard=static_guard())
            scope = {
                "type": "websocket",
                "client": ("172.16.1.1", 1234),
                "headers": [(b"cf-connecting-ip", b"203.0.113.9"), (b"x-forwarded-for", b"9.9.9.9")],
                "path": "/ws",
            }
            await middleware(scope, None, None)

        asyncio.run(run())

        assert len(reached) == 1
        assert reached[0]["headers"] == [
            (b"cf-connecting-ip", b"203.0.113.9"),
            (b"x-forwarded-for", b"203.0.113.9"),
        ]
