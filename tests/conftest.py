"""Shared fixtures for the invite_runner test suite."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
import copy
from pathlib import Path
from typing import Any

import httpx
from invite_runner.models import PipelineConfig
import pytest
import yaml

Handler = Callable[[httpx.Request], httpx.Response | Awaitable[httpx.Response]]

IP_ECHO_HOST = "httpbin.org"
OUTBOUND_IP = "203.0.113.7"

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_config_data(**overrides: Any) -> dict[str, Any]:
    """Build a raw config document with sensible defaults.

    Args:
        **overrides: Top-level sections to replace.

    Returns:
        A dict suitable for ``PipelineConfig.model_validate`` or YAML dumping.
    """
    defaults: dict[str, Any] = {
        "login": {
            "url": "https://svc.test/login",
            "method": "POST",
            "headers": {"X-Device": "{{device_json}}"},
            "body_template": {"phone": "{{phone}}", "code": "{{code}}"},
            "success_rule": "code==0",
            "token_path": "data.token",
        },
        "invite": {
            "url": "https://svc.test/invite",
            "method": "POST",
            "body_template": {"inviteCode": "{{invite_code}}"},
            "token": {"placement": "header"},
            "success_rule": "code==0",
        },
        "haozhuma": {
            "server": "https://provider.test",
            "token": "ptok",
            "sid": "9001",
            "user": "alice",
            "pass": "secret",
        },
        "sms": {"url": "https://svc.test/sms?phone={{phone}}"},
        "auto_run": {
            "sms_attempts": 3,
            "sms_retry_delay": 0,
            "poll_interval": 0.01,
            "sms_wait_timeout": 0.05,
            "iteration_delay": 0,
        },
    }
    defaults = copy.deepcopy(defaults)
    defaults.update(overrides)
    return defaults


def make_config(**overrides: Any) -> PipelineConfig:
    """Build a valid PipelineConfig with sensible defaults.

    Args:
        **overrides: Top-level sections to replace.

    Returns:
        A fully constructed PipelineConfig instance.
    """
    return PipelineConfig.model_validate(make_config_data(**overrides))


def json_response(data: Any, status: int = 200) -> httpx.Response:
    """Return a JSON response with an ``application/json`` content type."""
    return httpx.Response(status, json=data)


def trickle_response(count: int = 20, delay: float = 0.05) -> httpx.Response:
    """Return a 200 response whose body arrives one byte every *delay* seconds."""

    async def body() -> AsyncIterator[bytes]:
        for _ in range(count):
            await asyncio.sleep(delay)
            yield b"x"

    return httpx.Response(200, content=body())


async def stalled_response(_: httpx.Request) -> httpx.Response:
    """Answer only after far longer than any patched-down deadline."""
    await asyncio.sleep(5)
    return json_response({"code": 0})


def write_config(path: Path, data: dict[str, Any]) -> Path:
    """Write a config document as YAML and return its path."""
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f)
    return path


class FakeNetwork:
    """Client factory whose clients answer from an in-process handler.

    Every request is recorded in ``requests`` and every client build in
    ``clients`` as ``(timeout, proxy)``. Requests to the outbound-IP echo
    service are answered with ``OUTBOUND_IP`` unless ``ip_echo`` is set
    to a different handler. Handlers may be coroutine functions.
    """

    def __init__(self, handler: Handler | None = None) -> None:
        self.handler: Handler = handler or (lambda _: json_response({"code": 0}))
        self.ip_echo: Handler = lambda _: json_response({"origin": OUTBOUND_IP})
        self.requests: list[httpx.Request] = []
        self.clients: list[tuple[float, str | None]] = []

    def _route(self, request: httpx.Request) -> httpx.Response | Awaitable[httpx.Response]:
        if request.url.host == IP_ECHO_HOST:
            return self.ip_echo(request)
        self.requests.append(request)
        return self.handler(request)

    def factory(self, timeout: float, proxy: str | None) -> httpx.AsyncClient:
        self.clients.append((timeout, proxy))
        return httpx.AsyncClient(transport=httpx.MockTransport(self._route), timeout=timeout)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def network() -> FakeNetwork:
    """Return a FakeNetwork answering ``{"code": 0}`` to every call."""
    return FakeNetwork()


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    """Write the default config document to a temporary YAML file."""
    return write_config(tmp_path / "api.config.yaml", make_config_data())
