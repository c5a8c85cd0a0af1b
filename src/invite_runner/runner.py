"""Pipeline runner: login stage, invite stage, and their two-stage composition.

The login call authenticates with a phone number and SMS code; the token
found at ``login.token_path`` in its JSON response is handed to the invite
call, either as a header or written into the invite body. Both calls are
defined entirely by ``StageConfig`` templates.

Soft failures (non-JSON response, failed ``success_rule``, missing token,
non-2xx invite) are returned as data. ``TransportError`` and
``ConfigError`` propagate to the caller unchanged.
"""

from __future__ import annotations

import json
import logging
import random
from typing import Any
from urllib.parse import quote
import uuid

from invite_runner.models import (
    DeviceFingerprint,
    FailureKind,
    InviteResult,
    LoginResult,
    PipelineConfig,
    PipelineOutcome,
    RequestOutcome,
    SingleRunRequest,
    SingleRunResult,
    StageConfig,
)
from invite_runner.rules import evaluate
from invite_runner.templating import MISSING, render, resolve, set_path, to_text
from invite_runner.transport import RequestDispatcher

logger = logging.getLogger(__name__)

SNAPSHOT_LIMIT = 300
TOKEN_PREVIEW_LENGTH = 12
DEFAULT_APP_VERSION = "1.2.0"

DEVICE_MODELS = (
    "Xiaomi 14",
    "OPPO Find X7",
    "vivo X100",
    "Samsung Galaxy S24",
    "Huawei Mate 60",
    "OnePlus 12",
    "Redmi K70",
    "realme GT5",
    "Xiaomi 13",
    "OPPO Reno11",
    "vivo S18",
    "Samsung Galaxy A55",
    "Huawei nova 12",
    "OnePlus Ace 3",
    "Redmi Note 13",
    "realme 12 Pro",
)
OS_VERSIONS = ("12", "13", "14", "15")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def generate_device(app_version: str | None = None) -> DeviceFingerprint:
    """Build a fresh random device fingerprint.

    Args:
        app_version: App version to report; defaults to ``"1.2.0"``.

    Returns:
        A new ``DeviceFingerprint``.
    """
    return DeviceFingerprint(
        uId=str(uuid.uuid4()).upper(),
        plt="Android",
        osV=random.choice(OS_VERSIONS),  # nosec B311
        appV=app_version or DEFAULT_APP_VERSION,
        mdl=random.choice(DEVICE_MODELS),  # nosec B311
        isE=False,
    )


def build_variables(
    *,
    phone: str,
    code: str,
    invite_code: str = "",
    device: DeviceFingerprint | None = None,
) -> dict[str, Any]:
    """Assemble the template variables shared by both stages."""
    return {
        "phone": phone,
        "code": code,
        "invite_code": invite_code,
        "device": device.model_dump() if device is not None else {},
        "device_json": device.to_json() if device is not None else "{}",
    }


def _snapshot(body: Any) -> str:
    """First 300 characters of a response body for failure reasons."""
    text = body if isinstance(body, str) else json.dumps(body, ensure_ascii=False)
    return text[:SNAPSHOT_LIMIT]


def _with_default_content_type(headers: dict[str, Any]) -> dict[str, str]:
    rendered = {str(k): to_text(v) for k, v in headers.items()}
    if not any(name.lower() == "content-type" for name in rendered):
        rendered["Content-Type"] = "application/json"
    return rendered


async def _dispatch_stage(
    stage: StageConfig,
    headers: dict[str, str],
    body: Any,
    dispatcher: RequestDispatcher,
) -> RequestOutcome:
    return await dispatcher.dispatch(
        stage.url,
        method=stage.method,
        headers=headers,
        content=json.dumps(body, ensure_ascii=False),
    )


def _is_token_missing(token: Any) -> bool:
    return token is MISSING or token is None or token == ""


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


async def run_login(
    variables: dict[str, Any],
    config: PipelineConfig,
    dispatcher: RequestDispatcher,
) -> LoginResult:
    """Render and perform the login call, then extract the session token.

    Args:
        variables: Template variables (``phone``, ``code``, ``device``...).
        config: Pipeline configuration.
        dispatcher: Request dispatcher.

    Returns:
        The login outcome; ``token`` is set only on success.
    """
    stage = config.login
    headers = _with_default_content_type(render(stage.headers, variables))
    body = render(stage.body, variables)

    response = await _dispatch_stage(stage, headers, body, dispatcher)
    transport = response.transport_label

    if not isinstance(response.body, dict):
        return LoginResult(
            success=False,
            reason=f"Login response is not JSON (status {response.status})",
            failure=FailureKind.NON_JSON_RESPONSE,
            login_response=response.body,
            transport=transport,
        )

    if stage.success_rule and not evaluate(response.body, stage.success_rule):
        return LoginResult(
            success=False,
            reason=(
                "Login failed by success_rule. "
                f"response={_snapshot(response.body)}"
            ),
            failure=FailureKind.RULE_EVALUATION,
            login_response=response.body,
            transport=transport,
        )

    token = resolve(response.body, stage.token_path)
    if _is_token_missing(token):
        return LoginResult(
            success=False,
            reason=(
                f"Cannot find token at path: {stage.token_path}. "
                f"response={_snapshot(response.body)}"
            ),
            failure=FailureKind.MISSING_TOKEN,
            login_response=response.body,
            transport=transport,
        )

    return LoginResult(
        success=True,
        token=token,
        login_response=response.body,
        transport=transport,
    )


def build_invite_request(
    token: Any,
    variables: dict[str, Any],
    config: PipelineConfig,
) -> tuple[dict[str, str], Any]:
    """Render the invite headers and body and inject the login token.

    Args:
        token: Token extracted from the login response.
        variables: Template variables of the login stage.
        config: Pipeline configuration.

    Returns:
        ``(headers, body)`` ready to dispatch.
    """
    stage = config.invite
    invite_vars = {**variables, "token": token}
    headers = render(stage.headers, invite_vars)
    body = render(stage.body, invite_vars)

    injection = stage.token_injection
    if injection is not None and injection.placement == "header":
        headers = {**headers, injection.key: render(injection.template, invite_vars)}
    elif injection is not None and injection.placement == "body" and injection.path:
        body = set_path(body, injection.path, token)

    return _with_default_content_type(headers), body


async def run_invite(
    token: Any,
    variables: dict[str, Any],
    config: PipelineConfig,
    dispatcher: RequestDispatcher,
) -> InviteResult:
    """Perform the invite call with *token* and classify its response.

    With a ``success_rule`` the response must be a JSON object satisfying
    the rule; without one, any 2xx status counts as success.

    Args:
        token: Session token from the login stage.
        variables: Template variables (``invite_code`` at least).
        config: Pipeline configuration.
        dispatcher: Request dispatcher.

    Returns:
        The invite outcome.
    """
    stage = config.invite
    headers, body = build_invite_request(token, variables, config)

    response = await _dispatch_stage(stage, headers, body, dispatcher)
    transport = response.transport_label

    if stage.success_rule:
        if not isinstance(response.body, dict):
            return InviteResult(
                success=False,
                reason=f"Invite response is not JSON (status {response.status})",
                failure=FailureKind.NON_JSON_RESPONSE,
                invite_response=response.body,
                transport=transport,
            )
        if not evaluate(response.body, stage.success_rule):
            return InviteResult(
                success=False,
                reason=(
                    "Invite failed by success_rule. "
                    f"response={_snapshot(response.body)}"
                ),
                failure=FailureKind.RULE_EVALUATION,
                invite_response=response.body,
                transport=transport,
            )
    elif not response.ok:
        return InviteResult(
            success=False,
            reason=(
                f"Invite failed with HTTP {response.status}. "
                f"{_snapshot(response.body)}"
            ),
            failure=FailureKind.INVITE_FAILURE,
            invite_response=response.body,
            transport=transport,
        )

    return InviteResult(
        success=True, invite_response=response.body, transport=transport
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


async def run_login_and_invite(
    variables: dict[str, Any],
    config: PipelineConfig,
    dispatcher: RequestDispatcher,
) -> PipelineOutcome:
    """Run the login stage and, if it yields a token, the invite stage.

    Args:
        variables: Template variables built by ``build_variables()``.
        config: Pipeline configuration.
        dispatcher: Request dispatcher.

    Returns:
        The pipeline outcome. ``transports_used`` lists one label per HTTP
        call made.

    Raises:
        TransportError: If either call could not complete.
        ConfigError: If the transport mode is misconfigured.
    """
    login = await run_login(variables, config, dispatcher)
    transports = [login.transport]
    if not login.success:
        logger.info("Login stage failed: %s", login.reason)
        return PipelineOutcome(
            success=False,
            stage="login",
            reason=login.reason,
            failure=login.failure,
            login_response=login.login_response,
            transports_used=transports,
        )

    invite = await run_invite(login.token, variables, config, dispatcher)
    transports.append(invite.transport)
    if not invite.success:
        logger.info("Invite stage failed: %s", invite.reason)
        return PipelineOutcome(
            success=False,
            stage="invite",
            reason=invite.reason,
            failure=invite.failure,
            login_response=login.login_response,
            invite_response=invite.invite_response,
            transports_used=transports,
        )

    return PipelineOutcome(
        success=True,
        token_preview=to_text(login.token)[:TOKEN_PREVIEW_LENGTH] + "...",
        login_response=login.login_response,
        invite_response=invite.invite_response,
        transports_used=transports,
    )


async def trigger_sms(
    phone: str,
    config: PipelineConfig,
    dispatcher: RequestDispatcher,
) -> RequestOutcome:
    """Ask the target service to send a login code to *phone*.

    Args:
        phone: Destination phone number.
        config: Pipeline configuration providing the SMS call.
        dispatcher: Request dispatcher.

    Returns:
        The outcome of the SMS call.
    """
    url = render(config.sms.url, {"phone": quote(phone, safe="")})
    return await dispatcher.dispatch(url, method=config.sms.method)


async def run_single(
    request: SingleRunRequest,
    config: PipelineConfig,
    dispatcher: RequestDispatcher,
) -> SingleRunResult:
    """Run one manual login→invite attempt with a fresh device.

    Args:
        request: Phone, SMS code, invite code and app version.
        config: Pipeline configuration.
        dispatcher: Request dispatcher.

    Returns:
        The pipeline outcome with the phone and device used.

    Raises:
        ValueError: If the invite code, phone or code is empty.
    """
    if not request.invite_code:
        msg = "Invite code must not be empty"
        raise ValueError(msg)
    if not request.phone or not request.code:
        msg = "Phone and code must not be empty"
        raise ValueError(msg)

    device = generate_device(request.app_version)
    variables = build_variables(
        phone=request.phone,
        code=request.code,
        invite_code=request.invite_code,
        device=device,
    )
    outcome = await run_login_and_invite(variables, config, dispatcher)
    return SingleRunResult(
        **outcome.model_dump(),
        phone=request.phone,
        device_used=device,
    )
