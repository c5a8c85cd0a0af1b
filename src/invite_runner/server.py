"""HTTP API over the pipeline, provider and auto-run operations.

JSON endpoints cover single attempts and the individual steps (send SMS,
login, invite, provider login and balance). ``GET /api/auto-run`` streams
the auto-run progress as Server-Sent Events and cancels the run when the
client disconnects.

The config file is re-read on every request so that edits made by the
external config editor take effect without a restart. One
``RequestDispatcher`` (and so one outbound-IP cache) lives for the whole
process.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import contextlib
from datetime import UTC, datetime
import json
import logging
import os
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, Field

from invite_runner.config import load_config
from invite_runner.errors import ConfigError, ProviderError, TransportError
from invite_runner.models import (
    EventName,
    PipelineConfig,
    ProxyMode,
    RunEvent,
    SingleRunRequest,
)
from invite_runner.orchestrator import AutoRunner
from invite_runner.provider import CodeProviderClient
from invite_runner.runner import (
    DEFAULT_APP_VERSION,
    build_variables,
    generate_device,
    run_invite,
    run_login,
    run_single,
    trigger_sms,
)
from invite_runner.transport import ClientFactory, RequestDispatcher, redact_proxy_url

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
DISCONNECT_POLL_SECONDS = 1.0


class LoginRequest(BaseModel):
    """Body of ``POST /api/login``."""

    phone: str = ""
    code: str = ""
    app_version: str = Field(
        default=DEFAULT_APP_VERSION,
        validation_alias=AliasChoices("app_version", "appVersion"),
    )


class InviteRequest(BaseModel):
    """Body of ``POST /api/invite``."""

    token: str = ""
    invite_code: str = Field(
        default="", validation_alias=AliasChoices("invite_code", "inviteCode")
    )


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status)


def _parse_count(raw: str | None) -> int:
    try:
        value = int(str(raw or "").strip())
    except ValueError:
        return 1
    return value if value > 0 else 1


def create_app(
    config_path: str | os.PathLike[str] | None = None,
    *,
    client_factory: ClientFactory | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config_path: Config file; see ``config.resolve_config_path()``.
        client_factory: httpx client factory shared by all outbound calls.

    Returns:
        The configured application.
    """
    app = FastAPI(title="invite-runner", version="0.1.0")
    base_dispatcher = RequestDispatcher(client_factory=client_factory)

    def current_config() -> PipelineConfig:
        return load_config(config_path)

    def dispatcher_for(config: PipelineConfig) -> RequestDispatcher:
        return base_dispatcher.with_proxy(config.proxy)

    def provider_for(config: PipelineConfig) -> CodeProviderClient:
        return CodeProviderClient(config.provider, client_factory=client_factory)

    @app.exception_handler(ConfigError)
    async def _config_error(_: Request, exc: ConfigError) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(ValueError)
    async def _value_error(_: Request, exc: ValueError) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(TransportError)
    async def _transport_error(_: Request, exc: TransportError) -> JSONResponse:
        return _error(502, str(exc))

    @app.exception_handler(ProviderError)
    async def _provider_error(_: Request, exc: ProviderError) -> JSONResponse:
        return _error(502, str(exc))

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "now": datetime.now(UTC).isoformat()}

    @app.get("/api/proxy-status")
    async def proxy_status() -> dict[str, Any]:
        try:
            proxy = current_config().proxy
        except ConfigError:
            return {"ok": True, "mode": ProxyMode.DIRECT.value}
        status: dict[str, Any] = {"ok": True, "mode": proxy.mode.value}
        if proxy.mode is ProxyMode.CUSTOM:
            status["custom_url"] = redact_proxy_url(proxy.custom_url)
        elif proxy.mode is ProxyMode.GATEWAY:
            status["has_token"] = bool(proxy.gateway_token)
        return status

    @app.get("/api/config-status")
    async def config_status() -> dict[str, Any]:
        config = current_config()
        return {
            "ok": True,
            "login_url": config.login.url,
            "invite_url": config.invite.url,
            "has_token_path": bool(config.login.token_path),
        }

    @app.get("/api/send-sms", response_model=None)
    async def send_sms(phone: str = "") -> dict[str, Any] | JSONResponse:
        phone = phone.strip()
        if not phone:
            return _error(400, "Phone must not be empty")
        config = current_config()
        outcome = await trigger_sms(phone, config, dispatcher_for(config))
        if not outcome.ok:
            detail = (
                outcome.body
                if isinstance(outcome.body, str)
                else json.dumps(outcome.body, ensure_ascii=False, separators=(",", ":"))
            )
            return _error(
                outcome.status, f"SMS API returned {outcome.status}: {detail[:200]}"
            )
        return {"ok": True, "message": "Code sent", "proxy": outcome.transport_label}

    @app.post("/api/run")
    async def run(request: SingleRunRequest) -> dict[str, Any]:
        config = current_config()
        result = await run_single(request, config, dispatcher_for(config))
        return {"ok": True, **result.model_dump(mode="json")}

    @app.post("/api/login")
    async def login(request: LoginRequest) -> dict[str, Any]:
        phone, code = request.phone.strip(), request.code.strip()
        if not phone or not code:
            msg = "Phone and code must not be empty"
            raise ValueError(msg)
        config = current_config()
        device = generate_device(request.app_version.strip())
        variables = build_variables(phone=phone, code=code, device=device)
        result = await run_login(variables, config, dispatcher_for(config))
        if not result.success:
            return {
                "ok": False,
                "error": result.reason,
                "response": result.login_response,
            }
        return {
            "ok": True,
            "token": result.token,
            "phone": phone,
            "login_response": result.login_response,
            "proxy_used": result.transport,
        }

    @app.post("/api/invite")
    async def invite(request: InviteRequest) -> dict[str, Any]:
        token, invite_code = request.token.strip(), request.invite_code.strip()
        if not token:
            msg = "Token must not be empty"
            raise ValueError(msg)
        if not invite_code:
            msg = "Invite code must not be empty"
            raise ValueError(msg)
        config = current_config()
        variables = {"invite_code": invite_code}
        result = await run_invite(token, variables, config, dispatcher_for(config))
        return {
            "ok": True,
            "success": result.success,
            "reason": result.reason,
            "invite_response": result.invite_response,
            "proxy_used": result.transport,
        }

    @app.post("/api/provider/login", response_model=None)
    async def provider_login() -> dict[str, Any] | JSONResponse:
        config = current_config()
        if not config.provider.user or not config.provider.password:
            return _error(400, "Provider user and password are not configured")
        token = await provider_for(config).login()
        return {"ok": True, "token": token}

    @app.get("/api/provider/balance", response_model=None)
    async def provider_balance() -> dict[str, Any] | JSONResponse:
        config = current_config()
        if not config.provider.token:
            return _error(400, "Provider token is missing; log in first")
        balance = await provider_for(config).summary()
        return {"ok": True, **balance.model_dump()}

    @app.get("/api/auto-run")
    async def auto_run(
        request: Request,
        invite_code: str = Query("", alias="inviteCode"),
        app_version: str = Query(DEFAULT_APP_VERSION, alias="appVersion"),
        count: str = "1",
    ) -> StreamingResponse:
        """Streaming endpoint (SSE).

        Emits ``progress``, ``result`` and ``done`` events, or a single
        ``error`` event when the run cannot start.
        """

        async def gen() -> AsyncIterator[str]:
            try:
                config = current_config()
            except ConfigError as exc:
                yield RunEvent.of(EventName.ERROR, {"error": str(exc)}).to_sse()
                return

            runner = AutoRunner(
                config,
                provider_for(config),
                dispatcher_for(config),
                invite_code=invite_code,
                count=_parse_count(count),
                app_version=app_version.strip(),
            )
            watcher = asyncio.create_task(_cancel_on_disconnect(request, runner))
            try:
                async with contextlib.aclosing(runner.events()) as events:
                    async for event in events:
                        yield event.to_sse()
            finally:
                watcher.cancel()

        return StreamingResponse(gen(), media_type="text/event-stream", headers=SSE_HEADERS)

    return app


async def _cancel_on_disconnect(request: Request, runner: AutoRunner) -> None:
    while not runner.cancelled:
        if await request.is_disconnected():
            logger.info("Auto-run client disconnected; cancelling")
            runner.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


app = create_app()
