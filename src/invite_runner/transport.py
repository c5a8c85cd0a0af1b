"""Request dispatcher: transport-mode switch and response normalization.

Every pipeline call goes through ``RequestDispatcher.dispatch()``, which
performs the request under one of three transport modes and returns a
``RequestOutcome`` labelled with the network path that served it:

* ``direct``: request as-is, labelled with the process's outbound IP.
* ``custom``: routed through a configured HTTP(S)/SOCKS proxy.
* ``gateway``: wrapped as query parameters to a fetch-gateway endpoint.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import StrEnum
import json
import logging
import re
from typing import Any

import httpx

from invite_runner.errors import ConfigError, TransportError
from invite_runner.models import ProxyConfig, ProxyMode, RequestOutcome

logger = logging.getLogger(__name__)

DIRECT_TIMEOUT = 15.0
GATEWAY_TIMEOUT = 30.0
IP_LOOKUP_TIMEOUT = 4.0
IP_ECHO_URL = "https://httpbin.org/ip"
DIRECT_FALLBACK_LABEL = "direct"
GATEWAY_LABEL = "scrape.do"

ClientFactory = Callable[[float, str | None], httpx.AsyncClient]
"""Builds an ``httpx.AsyncClient`` for a timeout and an optional proxy URL."""

_CREDENTIALS = re.compile(r"//.*@")


def default_client_factory(timeout: float, proxy: str | None) -> httpx.AsyncClient:
    """Create a fresh client bound to *timeout* and, if given, *proxy*.

    httpx applies *timeout* per connect, read, write and pool phase; callers
    bound the whole call with ``asyncio.timeout`` on top.
    """
    return httpx.AsyncClient(timeout=timeout, proxy=proxy)


def redact_proxy_url(url: str) -> str:
    """Replace embedded credentials in a proxy URL with ``***``."""
    return _CREDENTIALS.sub("//***@", url)


def normalize_response(response: httpx.Response, transport_label: str) -> RequestOutcome:
    """Convert an httpx response into a ``RequestOutcome``.

    The body is parsed as JSON only when the content type declares JSON
    and the text is not blank; unparseable JSON falls back to the raw text.

    Args:
        response: The completed response.
        transport_label: Label of the network path that served it.

    Returns:
        The normalized outcome.
    """
    text = response.text
    content_type = response.headers.get("content-type", "")
    body: Any = text
    if "application/json" in content_type and text.strip():
        try:
            body = json.loads(text)
        except ValueError:
            body = text
    return RequestOutcome(
        ok=response.is_success,
        status=response.status_code,
        body=body,
        transport_label=transport_label,
    )


class IpLookupState(StrEnum):
    """Lifecycle of the outbound-IP lookup."""

    PENDING = "pending"
    RESOLVED = "resolved"
    FALLBACK = "fallback"


class OutboundIpCell:
    """Memoized outbound-IP label for direct-mode calls.

    The lookup runs at most once per cell; concurrent callers wait on the
    same lookup. A failed lookup settles the cell on the fallback label,
    which is cached like a successful one.
    """

    def __init__(
        self,
        lookup_url: str = IP_ECHO_URL,
        fallback_label: str = DIRECT_FALLBACK_LABEL,
    ) -> None:
        self._lookup_url = lookup_url
        self._fallback_label = fallback_label
        self._state = IpLookupState.PENDING
        self._label: str | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> IpLookupState:
        """Current lookup state."""
        return self._state

    async def get(self, client_factory: ClientFactory) -> str:
        """Return the cached label, performing the lookup on first use."""
        if self._state is IpLookupState.PENDING:
            async with self._lock:
                if self._state is IpLookupState.PENDING:
                    await self._lookup(client_factory)
        return self._label or self._fallback_label

    async def _lookup(self, client_factory: ClientFactory) -> None:
        try:
            async with asyncio.timeout(IP_LOOKUP_TIMEOUT):
                async with client_factory(IP_LOOKUP_TIMEOUT, None) as client:
                    response = await client.get(self._lookup_url)
                    data = response.json()
        except (httpx.HTTPError, TimeoutError, ValueError) as exc:
            logger.debug("Outbound IP lookup failed: %s", exc)
            data = None

        origin = data.get("origin") if isinstance(data, dict) else None
        if origin:
            self._label = str(origin)
            self._state = IpLookupState.RESOLVED
        else:
            self._label = self._fallback_label
            self._state = IpLookupState.FALLBACK


class RequestDispatcher:
    """Performs HTTP calls under the configured transport mode.

    Attributes:
        proxy: Transport configuration used when no mode override is given.
    """

    def __init__(
        self,
        proxy: ProxyConfig | None = None,
        *,
        client_factory: ClientFactory | None = None,
        ip_cell: OutboundIpCell | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            proxy: Transport configuration; defaults to direct mode.
            client_factory: Builds the httpx client per call.
            ip_cell: Outbound-IP memo; one per dispatcher when omitted.
        """
        self.proxy = proxy if proxy is not None else ProxyConfig()
        self._client_factory = client_factory or default_client_factory
        self._ip_cell = ip_cell if ip_cell is not None else OutboundIpCell()

    def with_proxy(self, proxy: ProxyConfig) -> RequestDispatcher:
        """Return a dispatcher for *proxy* sharing this one's IP cell and factory."""
        return RequestDispatcher(
            proxy, client_factory=self._client_factory, ip_cell=self._ip_cell
        )

    async def dispatch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        content: str | bytes | None = None,
        mode: ProxyMode | str | None = None,
    ) -> RequestOutcome:
        """Perform one HTTP call and normalize its response.

        Args:
            url: Target URL.
            method: HTTP method.
            headers: Request headers.
            content: Raw request body.
            mode: Per-call transport mode override.

        Returns:
            The normalized outcome.

        Raises:
            ConfigError: If the selected mode lacks its credentials or is
                unknown.
            TransportError: If the call could not complete.
        """
        effective = self._resolve_mode(mode)
        if effective is ProxyMode.CUSTOM:
            return await self._dispatch_custom(url, method, headers, content)
        if effective is ProxyMode.GATEWAY:
            return await self._dispatch_gateway(url, method, headers, content)
        return await self._dispatch_direct(url, method, headers, content)

    def _resolve_mode(self, mode: ProxyMode | str | None) -> ProxyMode:
        if mode is None:
            return self.proxy.mode
        try:
            return ProxyMode(mode)
        except ValueError:
            msg = f"Unsupported proxy mode: {mode}"
            raise ConfigError(msg) from None

    async def _dispatch_direct(
        self,
        url: str,
        method: str,
        headers: dict[str, str] | None,
        content: str | bytes | None,
    ) -> RequestOutcome:
        response = await self._send(
            url, method, headers, content, timeout=DIRECT_TIMEOUT, label="direct"
        )
        label = await self._ip_cell.get(self._client_factory)
        return normalize_response(response, label)

    async def _dispatch_custom(
        self,
        url: str,
        method: str,
        headers: dict[str, str] | None,
        content: str | bytes | None,
    ) -> RequestOutcome:
        proxy_url = self.proxy.custom_url.strip()
        if not proxy_url:
            msg = "Custom proxy URL is empty; set proxy.custom_url"
            raise ConfigError(msg)
        response = await self._send(
            url,
            method,
            headers,
            content,
            timeout=DIRECT_TIMEOUT,
            proxy=proxy_url,
            label="custom",
        )
        return normalize_response(response, redact_proxy_url(proxy_url))

    async def _dispatch_gateway(
        self,
        url: str,
        method: str,
        headers: dict[str, str] | None,
        content: str | bytes | None,
    ) -> RequestOutcome:
        token = self.proxy.gateway_token.strip()
        if not token:
            msg = "Gateway API token is empty; set proxy.gateway_token"
            raise ConfigError(msg)
        params = {"token": token, "url": url, "forwardHeaders": "true"}
        response = await self._send(
            self.proxy.gateway_url,
            method,
            headers,
            content,
            timeout=GATEWAY_TIMEOUT,
            params=params,
            label="gateway",
            target=url,
        )
        return normalize_response(response, GATEWAY_LABEL)

    async def _send(
        self,
        url: str,
        method: str,
        headers: dict[str, str] | None,
        content: str | bytes | None,
        *,
        timeout: float,
        label: str,
        proxy: str | None = None,
        params: dict[str, str] | None = None,
        target: str | None = None,
    ) -> httpx.Response:
        target = target or url
        try:
            async with asyncio.timeout(timeout):
                async with self._client_factory(timeout, proxy) as client:
                    return await client.request(
                        method.upper(),
                        url,
                        headers=headers,
                        content=content,
                        params=params,
                    )
        except (httpx.HTTPError, TimeoutError) as exc:
            logger.error("[dispatch %s] %s failed: %r", label, target, exc)
            raise TransportError(target, exc) from exc
