"""Tests for the request dispatcher and its transport modes.

Uses ``FakeNetwork`` from conftest as the client factory: every httpx
client is backed by an ``httpx.MockTransport``, and the proxy URL each
client was built with is recorded so custom mode can be asserted without
a real proxy.
"""

from __future__ import annotations

import asyncio
import time

import httpx
from invite_runner.errors import ConfigError, TransportError
from invite_runner.models import ProxyConfig, ProxyMode
from invite_runner.transport import (
    DIRECT_TIMEOUT,
    GATEWAY_LABEL,
    GATEWAY_TIMEOUT,
    IP_LOOKUP_TIMEOUT,
    IpLookupState,
    OutboundIpCell,
    RequestDispatcher,
    normalize_response,
    redact_proxy_url,
)
import pytest

from tests.conftest import (
    OUTBOUND_IP,
    FakeNetwork,
    json_response,
    stalled_response,
    trickle_response,
)

# ===========================================================================
# Response normalization
# ===========================================================================


@pytest.mark.unit
class TestNormalizeResponse:
    """normalize_response() parses JSON only when declared and non-blank."""

    def test_json_body_is_parsed(self) -> None:
        """A JSON content type yields the parsed object."""
        outcome = normalize_response(json_response({"code": 0}), "direct")
        assert outcome.ok is True
        assert outcome.status == 200
        assert outcome.body == {"code": 0}
        assert outcome.transport_label == "direct"

    def test_text_body_is_kept(self) -> None:
        """Non-JSON content types keep the raw text."""
        response = httpx.Response(200, text="<html>hi</html>")
        assert normalize_response(response, "x").body == "<html>hi</html>"

    def test_invalid_json_falls_back_to_text(self) -> None:
        """A declared-but-broken JSON body is kept as text."""
        response = httpx.Response(
            200, content=b"{oops", headers={"content-type": "application/json"}
        )
        assert normalize_response(response, "x").body == "{oops"

    def test_blank_json_body_is_text(self) -> None:
        """An empty JSON-typed body is the empty string."""
        response = httpx.Response(
            204, content=b"", headers={"content-type": "application/json; charset=utf-8"}
        )
        outcome = normalize_response(response, "x")
        assert outcome.body == ""
        assert outcome.ok is True

    def test_non_2xx_is_not_ok(self) -> None:
        """Statuses outside 200-299 are not ok."""
        outcome = normalize_response(json_response({"code": 1}, status=500), "x")
        assert outcome.ok is False
        assert outcome.status == 500


@pytest.mark.unit
class TestRedactProxyUrl:
    """Credentials embedded in proxy URLs are masked."""

    def test_redacts_user_and_password(self) -> None:
        """``user:pass@`` becomes ``***@``."""
        assert redact_proxy_url("http://user:pw@proxy.test:8080") == "http://***@proxy.test:8080"

    def test_url_without_credentials_unchanged(self) -> None:
        """Nothing to redact leaves the URL as is."""
        assert redact_proxy_url("socks5://proxy.test:1080") == "socks5://proxy.test:1080"


# ===========================================================================
# Transport modes
# ===========================================================================


@pytest.mark.unit
class TestDirectMode:
    """Direct mode sends the request unchanged and labels it with the outbound IP."""

    @pytest.mark.asyncio
    async def test_direct_request_and_label(self, network: FakeNetwork) -> None:
        """The request reaches the target and is labelled with the IP."""
        dispatcher = RequestDispatcher(client_factory=network.factory)

        outcome = await dispatcher.dispatch(
            "https://svc.test/login",
            method="post",
            headers={"X-A": "1"},
            content='{"a":1}',
        )

        assert outcome.transport_label == OUTBOUND_IP
        request = network.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://svc.test/login"
        assert request.headers["X-A"] == "1"
        assert request.content == b'{"a":1}'
        assert (DIRECT_TIMEOUT, None) in network.clients

    @pytest.mark.asyncio
    async def test_ip_lookup_runs_once(self, network: FakeNetwork) -> None:
        """Concurrent direct calls share one outbound-IP lookup."""
        lookups = 0

        def echo(_: httpx.Request) -> httpx.Response:
            nonlocal lookups
            lookups += 1
            return json_response({"origin": OUTBOUND_IP})

        network.ip_echo = echo
        dispatcher = RequestDispatcher(client_factory=network.factory)

        outcomes = await asyncio.gather(
            *(dispatcher.dispatch("https://svc.test/x") for _ in range(5))
        )

        assert {outcome.transport_label for outcome in outcomes} == {OUTBOUND_IP}
        assert lookups == 1

    @pytest.mark.asyncio
    async def test_ip_lookup_failure_uses_fallback(self, network: FakeNetwork) -> None:
        """A failed lookup settles on the fallback label and is not retried."""
        lookups = 0

        def broken(request: httpx.Request) -> httpx.Response:
            nonlocal lookups
            lookups += 1
            raise httpx.ConnectError("no route", request=request)

        network.ip_echo = broken
        cell = OutboundIpCell(fallback_label="direct")
        dispatcher = RequestDispatcher(client_factory=network.factory, ip_cell=cell)

        first = await dispatcher.dispatch("https://svc.test/x")
        second = await dispatcher.dispatch("https://svc.test/y")

        assert first.transport_label == second.transport_label == "direct"
        assert cell.state is IpLookupState.FALLBACK
        assert lookups == 1

    @pytest.mark.asyncio
    async def test_with_proxy_shares_ip_cell(self, network: FakeNetwork) -> None:
        """Dispatchers derived with with_proxy() reuse the resolved IP."""
        base = RequestDispatcher(client_factory=network.factory)
        await base.dispatch("https://svc.test/x")

        derived = base.with_proxy(ProxyConfig())
        outcome = await derived.dispatch("https://svc.test/y")

        assert outcome.transport_label == OUTBOUND_IP
        assert sum(1 for timeout, _ in network.clients if timeout == IP_LOOKUP_TIMEOUT) == 1


@pytest.mark.unit
class TestCustomMode:
    """Custom mode routes through the configured proxy."""

    @pytest.mark.asyncio
    async def test_client_built_with_proxy_and_label_redacted(
        self, network: FakeNetwork
    ) -> None:
        """The proxy URL reaches the client; the label hides credentials."""
        proxy = ProxyConfig(mode=ProxyMode.CUSTOM, custom_url="http://u:p@proxy.test:8080")
        dispatcher = RequestDispatcher(proxy, client_factory=network.factory)

        outcome = await dispatcher.dispatch("https://svc.test/login")

        assert network.clients == [(DIRECT_TIMEOUT, "http://u:p@proxy.test:8080")]
        assert outcome.transport_label == "http://***@proxy.test:8080"

    @pytest.mark.asyncio
    async def test_empty_proxy_url_is_config_error(self, network: FakeNetwork) -> None:
        """Custom mode without a URL fails before any request."""
        dispatcher = RequestDispatcher(
            ProxyConfig(mode=ProxyMode.CUSTOM), client_factory=network.factory
        )

        with pytest.raises(ConfigError, match="Custom proxy URL is empty"):
            await dispatcher.dispatch("https://svc.test/login")
        assert network.requests == []


@pytest.mark.unit
class TestGatewayMode:
    """Gateway mode wraps the target URL as query parameters."""

    @pytest.mark.asyncio
    async def test_request_wrapped_for_gateway(self, network: FakeNetwork) -> None:
        """Token, target URL and forwardHeaders are sent to the gateway."""
        proxy = ProxyConfig(mode="scrape_do", scrape_do_token="gtok")
        dispatcher = RequestDispatcher(proxy, client_factory=network.factory)

        outcome = await dispatcher.dispatch(
            "https://svc.test/login?x=1", method="POST", content="{}"
        )

        request = network.requests[0]
        assert request.url.host == "api.scrape.do"
        assert request.url.params["token"] == "gtok"
        assert request.url.params["url"] == "https://svc.test/login?x=1"
        assert request.url.params["forwardHeaders"] == "true"
        assert request.method == "POST"
        assert outcome.transport_label == GATEWAY_LABEL
        assert network.clients == [(GATEWAY_TIMEOUT, None)]

    @pytest.mark.asyncio
    async def test_empty_token_is_config_error(self, network: FakeNetwork) -> None:
        """Gateway mode without a token fails before any request."""
        dispatcher = RequestDispatcher(
            ProxyConfig(mode=ProxyMode.GATEWAY), client_factory=network.factory
        )

        with pytest.raises(ConfigError, match="Gateway API token is empty"):
            await dispatcher.dispatch("https://svc.test/login")


@pytest.mark.unit
class TestDispatchErrors:
    """Transport failures and mode overrides."""

    @pytest.mark.asyncio
    async def test_connect_error_becomes_transport_error(self) -> None:
        """httpx errors are wrapped with the target URL."""

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        network = FakeNetwork(refuse)
        dispatcher = RequestDispatcher(client_factory=network.factory)

        with pytest.raises(TransportError) as exc_info:
            await dispatcher.dispatch("https://svc.test/login")

        assert exc_info.value.url == "https://svc.test/login"
        assert "connection refused" in exc_info.value.detail
        assert isinstance(exc_info.value.cause, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_mode_override(self, network: FakeNetwork) -> None:
        """A per-call mode overrides the configured one."""
        proxy = ProxyConfig(mode=ProxyMode.GATEWAY, gateway_token="gtok")
        dispatcher = RequestDispatcher(proxy, client_factory=network.factory)

        outcome = await dispatcher.dispatch("https://svc.test/x", mode="direct")

        assert outcome.transport_label == OUTBOUND_IP
        assert network.requests[0].url.host == "svc.test"

    @pytest.mark.asyncio
    async def test_unknown_mode_is_config_error(self, network: FakeNetwork) -> None:
        """An unknown per-call mode is rejected."""
        dispatcher = RequestDispatcher(client_factory=network.factory)

        with pytest.raises(ConfigError, match="Unsupported proxy mode"):
            await dispatcher.dispatch("https://svc.test/x", mode="tor")


# ===========================================================================
# Call deadlines
# ===========================================================================

_MODULE = "invite_runner.transport"


@pytest.mark.unit
class TestCallDeadline:
    """The mode's timeout bounds the whole call, not each read."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("proxy", "constant"),
        [
            (ProxyConfig(), "DIRECT_TIMEOUT"),
            (
                ProxyConfig(mode=ProxyMode.CUSTOM, custom_url="http://proxy.test:8080"),
                "DIRECT_TIMEOUT",
            ),
            (ProxyConfig(mode=ProxyMode.GATEWAY, gateway_token="gtok"), "GATEWAY_TIMEOUT"),
        ],
        ids=["direct", "custom", "gateway"],
    )
    async def test_trickled_body_hits_deadline(
        self, proxy: ProxyConfig, constant: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A body sent byte by byte is cut off once the deadline passes."""
        monkeypatch.setattr(f"{_MODULE}.{constant}", 0.2)
        network = FakeNetwork(lambda _: trickle_response(count=40, delay=0.05))
        dispatcher = RequestDispatcher(proxy, client_factory=network.factory)

        started = time.monotonic()
        with pytest.raises(TransportError) as exc_info:
            await dispatcher.dispatch("https://svc.test/login")
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        assert exc_info.value.url == "https://svc.test/login"
        assert isinstance(exc_info.value.cause, TimeoutError)

    @pytest.mark.asyncio
    async def test_stalled_upstream_hits_deadline(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """An upstream that never answers raises TransportError at the bound."""
        monkeypatch.setattr(f"{_MODULE}.GATEWAY_TIMEOUT", 0.2)
        network = FakeNetwork(stalled_response)
        proxy = ProxyConfig(mode=ProxyMode.GATEWAY, gateway_token="gtok")
        dispatcher = RequestDispatcher(proxy, client_factory=network.factory)

        started = time.monotonic()
        with pytest.raises(TransportError):
            await dispatcher.dispatch("https://svc.test/login")

        assert time.monotonic() - started < 1.0

    @pytest.mark.asyncio
    async def test_fast_body_within_deadline(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A trickled body that completes in time is returned whole."""
        monkeypatch.setattr(f"{_MODULE}.DIRECT_TIMEOUT", 2.0)
        network = FakeNetwork(lambda _: trickle_response(count=4, delay=0.01))
        dispatcher = RequestDispatcher(client_factory=network.factory)

        outcome = await dispatcher.dispatch("https://svc.test/login")

        assert outcome.body == "xxxx"
        assert outcome.transport_label == OUTBOUND_IP

    @pytest.mark.asyncio
    async def test_stalled_ip_lookup_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """An IP echo that never answers settles on the fallback label."""
        monkeypatch.setattr(f"{_MODULE}.IP_LOOKUP_TIMEOUT", 0.2)
        network = FakeNetwork()
        network.ip_echo = stalled_response
        cell = OutboundIpCell()

        started = time.monotonic()
        label = await cell.get(network.factory)

        assert time.monotonic() - started < 1.0
        assert label == "direct"
        assert cell.state is IpLookupState.FALLBACK
