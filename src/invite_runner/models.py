"""Core data models for invite_runner.

Defines the Pydantic models for the pipeline configuration (stages, proxy,
code-provider, SMS trigger, auto-run timings), the per-call and per-run
outcomes, and the events streamed by the auto-run orchestrator. Every
model is frozen: configuration is read once per run and outcomes are
terminal once constructed.
"""

from __future__ import annotations

from enum import StrEnum
import json
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from invite_runner.rules import parse_rule

DEFAULT_SMS_URL = "https://www.ankangme.com/prod-api/resource/sms/code?phone={{phone}}"
DEFAULT_PROVIDER_SERVER = "https://api.haozhuma.com"
DEFAULT_GATEWAY_URL = "https://api.scrape.do"


# ---------------------------------------------------------------------------
# Stage configuration
# ---------------------------------------------------------------------------


class TokenInjection(BaseModel):
    """Where the login token is placed in the invite request.

    Attributes:
        placement: ``"header"`` sets a header, ``"body"`` writes into the
            rendered JSON body.
        key: Header name used when ``placement == "header"``.
        template: Header value template; ``{{token}}`` is available.
        path: Dotted body path used when ``placement == "body"``.
    """

    model_config = ConfigDict(frozen=True)

    placement: Literal["header", "body"]
    key: str = "Authorization"
    template: str = "Bearer {{token}}"
    path: str | None = None

    @model_validator(mode="after")
    def _body_placement_needs_path(self) -> TokenInjection:
        """Validate that body placement names a target path."""
        if self.placement == "body" and not self.path:
            msg = "token_injection.path is required when placement=body"
            raise ValueError(msg)
        return self


class StageConfig(BaseModel):
    """One HTTP call of the pipeline (login or invite).

    Headers and body are JSON templates rendered with the stage variables.

    Attributes:
        url: Target URL.
        method: HTTP method, upper-cased.
        headers: Header template (a JSON object).
        body: Body template, also accepted as ``body_template``.
        success_rule: Optional ``<path> == <literal>`` rule.
        token_path: Dotted path of the session token in the login response.
        token_injection: Token placement for the invite request, also
            accepted as ``token``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str
    method: str = "POST"
    headers: dict[str, Any] = Field(default_factory=dict)
    body: Any = Field(
        default_factory=dict,
        validation_alias=AliasChoices("body", "body_template"),
    )
    success_rule: str | None = None
    token_path: str | None = None
    token_injection: TokenInjection | None = Field(
        default=None,
        validation_alias=AliasChoices("token_injection", "token"),
    )

    @field_validator("method")
    @classmethod
    def _upper_method(cls, v: str) -> str:
        """Normalize the method to upper case, defaulting blanks to POST."""
        return (v or "POST").strip().upper()

    @field_validator("headers", mode="before")
    @classmethod
    def _null_headers(cls, v: Any) -> Any:
        """Treat a ``null`` header template as empty."""
        return {} if v is None else v

    @field_validator("success_rule")
    @classmethod
    def _rule_must_parse(cls, v: str | None) -> str | None:
        """Reject malformed success rules at config-validation time."""
        if v:
            parse_rule(v)
        return v or None


class ProxyMode(StrEnum):
    """Network path used to perform pipeline calls."""

    DIRECT = "direct"
    CUSTOM = "custom"
    GATEWAY = "gateway"


class ProxyConfig(BaseModel):
    """Transport mode selection and its credentials.

    Attributes:
        mode: Transport mode; the legacy name ``scrape_do`` maps to gateway.
        custom_url: Proxy URL for custom mode (may embed credentials).
        gateway_token: API token for gateway mode.
        gateway_url: Fetch-gateway endpoint.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    mode: ProxyMode = ProxyMode.DIRECT
    custom_url: str = ""
    gateway_token: str = Field(
        default="",
        validation_alias=AliasChoices("gateway_token", "scrape_do_token"),
    )
    gateway_url: str = DEFAULT_GATEWAY_URL

    @field_validator("mode", mode="before")
    @classmethod
    def _legacy_mode_name(cls, v: Any) -> Any:
        """Accept the legacy ``scrape_do`` mode name."""
        if v == "scrape_do":
            return ProxyMode.GATEWAY
        return v

    @field_validator("custom_url", "gateway_token", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        return "" if v is None else str(v).strip()


class ProviderSession(BaseModel):
    """Credentials for the external code-provider.

    Attributes:
        server: Base URL of the provider API.
        token: Session token returned by the provider login.
        project_id: Project id numbers are rented for (config key ``sid``).
        user: Account name, used only by the provider login.
        password: Account password (config key ``pass``).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    server: str = DEFAULT_PROVIDER_SERVER
    token: str = ""
    project_id: str = Field(
        default="", validation_alias=AliasChoices("project_id", "sid")
    )
    user: str = ""
    password: str = Field(default="", validation_alias=AliasChoices("password", "pass"))

    @field_validator("server", "token", "project_id", "user", "password", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        return "" if v is None else str(v).strip()

    @field_validator("server")
    @classmethod
    def _default_server(cls, v: str) -> str:
        return (v or DEFAULT_PROVIDER_SERVER).rstrip("/")


class SmsConfig(BaseModel):
    """The SMS-trigger call that makes the target service send a login code."""

    model_config = ConfigDict(frozen=True)

    url: str = DEFAULT_SMS_URL
    method: str = "GET"


class AutoRunSettings(BaseModel):
    """Timings of the auto-run loop, in seconds.

    Attributes:
        sms_attempts: Attempts for the SMS trigger.
        sms_retry_delay: Fixed delay between SMS trigger attempts.
        poll_interval: Delay between SMS-code polls.
        sms_wait_timeout: Overall deadline for receiving the SMS code.
        iteration_delay: Delay between consecutive iterations.
    """

    model_config = ConfigDict(frozen=True)

    sms_attempts: int = 3
    sms_retry_delay: float = 3.0
    poll_interval: float = 15.0
    sms_wait_timeout: float = 180.0
    iteration_delay: float = 2.0

    @field_validator("sms_attempts")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            msg = "sms_attempts must be >= 1"
            raise ValueError(msg)
        return v

    @field_validator(
        "sms_retry_delay", "poll_interval", "sms_wait_timeout", "iteration_delay"
    )
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            msg = "Delays must be >= 0"
            raise ValueError(msg)
        return v


class PipelineConfig(BaseModel):
    """Complete runtime configuration, loaded once per run invocation.

    Attributes:
        login: Login stage.
        invite: Invite stage.
        proxy: Transport mode and credentials.
        provider: Code-provider credentials (config key ``haozhuma``).
        sms: SMS-trigger call.
        auto_run: Auto-run timings.
        log_level: Logging level name.
        log_file: Optional log file path.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    login: StageConfig
    invite: StageConfig
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    provider: ProviderSession = Field(
        default_factory=ProviderSession,
        validation_alias=AliasChoices("provider", "haozhuma"),
    )
    sms: SmsConfig = Field(default_factory=SmsConfig)
    auto_run: AutoRunSettings = Field(default_factory=AutoRunSettings)
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator("proxy", "provider", "sms", "auto_run", mode="before")
    @classmethod
    def _null_section(cls, v: Any) -> Any:
        """Treat an explicit ``null`` section as the section defaults."""
        return {} if v is None else v


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class RequestOutcome(BaseModel):
    """Normalized result of one HTTP call.

    Attributes:
        ok: Whether the status is 2xx.
        status: HTTP status code.
        body: Parsed JSON, or the raw text when the reply is not JSON.
        transport_label: Network path that served the call, credentials
            redacted.
    """

    model_config = ConfigDict(frozen=True)

    ok: bool
    status: int
    body: Any = None
    transport_label: str


class FailureKind(StrEnum):
    """Soft classification of a failed pipeline stage."""

    NON_JSON_RESPONSE = "non_json_response"
    RULE_EVALUATION = "rule_evaluation"
    MISSING_TOKEN = "missing_token"
    INVITE_FAILURE = "invite_failure"


class LoginResult(BaseModel):
    """Outcome of the login stage alone."""

    model_config = ConfigDict(frozen=True)

    success: bool
    reason: str | None = None
    failure: FailureKind | None = None
    token: Any = None
    login_response: Any = None
    transport: str


class InviteResult(BaseModel):
    """Outcome of the invite stage alone."""

    model_config = ConfigDict(frozen=True)

    success: bool
    reason: str | None = None
    failure: FailureKind | None = None
    invite_response: Any = None
    transport: str


class PipelineOutcome(BaseModel):
    """Outcome of one login→invite pipeline execution.

    ``transports_used`` has one entry per HTTP call attempted: one when
    the login stage fails, two once the invite call was made.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    stage: Literal["login", "invite"] | None = None
    reason: str | None = None
    failure: FailureKind | None = None
    token_preview: str | None = None
    login_response: Any = None
    invite_response: Any = None
    transports_used: list[str] = Field(default_factory=list)


class DeviceFingerprint(BaseModel):
    """Randomized device description sent with the login request."""

    model_config = ConfigDict(frozen=True)

    uId: str  # noqa: N815
    plt: str = "Android"
    osV: str  # noqa: N815
    appV: str  # noqa: N815
    mdl: str
    isE: bool = False  # noqa: N815

    def to_json(self) -> str:
        """Compact JSON form exposed to templates as ``device_json``."""
        return json.dumps(self.model_dump(), ensure_ascii=False, separators=(",", ":"))


class SingleRunRequest(BaseModel):
    """Input of a manual single attempt."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    phone: str = ""
    code: str = ""
    invite_code: str = Field(
        default="", validation_alias=AliasChoices("invite_code", "inviteCode")
    )
    app_version: str = Field(
        default="1.0.0", validation_alias=AliasChoices("app_version", "appVersion")
    )

    @field_validator("phone", "code", "invite_code", "app_version", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        return "" if v is None else str(v).strip()


class SingleRunResult(PipelineOutcome):
    """Outcome of a manual single attempt, with the inputs it used."""

    phone: str
    device_used: DeviceFingerprint


# ---------------------------------------------------------------------------
# Auto-run events
# ---------------------------------------------------------------------------


class IterationStage(StrEnum):
    """States of one auto-run iteration, in order."""

    GET_PHONE = "getPhone"
    SEND_SMS = "sendSms"
    WAIT_SMS = "waitSms"
    LOGIN_AND_INVITE = "loginAndInvite"


class AutoRunStep(BaseModel):
    """Result of one auto-run iteration; immutable once emitted."""

    model_config = ConfigDict(frozen=True)

    index: int
    phone: str | None = None
    success: bool = False
    stage: str | None = None
    reason: str | None = None
    transports: list[str] = Field(default_factory=list)


class ProgressUpdate(BaseModel):
    """Emitted when an iteration enters a new state."""

    model_config = ConfigDict(frozen=True)

    current: int
    total: int
    stage: IterationStage
    phone: str | None = None


class RunSummary(BaseModel):
    """Totals emitted once the auto-run ends."""

    model_config = ConfigDict(frozen=True)

    total: int
    success: int
    fail: int


class EventName(StrEnum):
    """Names of the events in the auto-run progress stream."""

    PROGRESS = "progress"
    RESULT = "result"
    DONE = "done"
    ERROR = "error"


class RunEvent(BaseModel):
    """One named event of the progress stream with its JSON payload."""

    model_config = ConfigDict(frozen=True)

    event: EventName
    data: dict[str, Any]

    @classmethod
    def of(cls, event: EventName, payload: BaseModel | dict[str, Any]) -> RunEvent:
        """Build an event from a model or a plain dict payload."""
        data = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
        return cls(event=event, data=data)

    def to_sse(self) -> str:
        """Render as a Server-Sent Events frame."""
        return f"event: {self.event}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"


class ProviderBalance(BaseModel):
    """Account summary reported by the code-provider."""

    model_config = ConfigDict(frozen=True)

    money: Any = None
    num: Any = None
