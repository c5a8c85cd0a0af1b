"""Client for the phone-number/SMS-code rental provider.

The provider exposes a single ``GET <server>/sms/`` endpoint whose ``api``
query parameter selects the operation. Replies are JSON objects with a
``code`` field (``0`` on success, sometimes as a string) and a ``msg``
field on failure. Provider messages are treated as opaque strings.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from invite_runner.errors import ProviderError, TransportError
from invite_runner.models import ProviderBalance, ProviderSession
from invite_runner.transport import ClientFactory, default_client_factory

logger = logging.getLogger(__name__)

PROVIDER_TIMEOUT = 10.0


def _is_success(data: dict[str, Any], *accepted: str) -> bool:
    return str(data.get("code")) in (accepted or ("0",))


def _describe(data: dict[str, Any]) -> str:
    return str(data.get("msg") or json.dumps(data, ensure_ascii=False))


class CodeProviderClient:
    """Async client for the code-provider HTTP API.

    Attributes:
        session: Server URL, token and project id used for every call.
    """

    def __init__(
        self,
        session: ProviderSession,
        *,
        client_factory: ClientFactory | None = None,
        timeout: float = PROVIDER_TIMEOUT,
    ) -> None:
        """Initialize the client.

        Args:
            session: Provider credentials.
            client_factory: Builds the httpx client per call.
            timeout: Per-call timeout in seconds.
        """
        self.session = session
        self._client_factory = client_factory or default_client_factory
        self._timeout = timeout

    async def _call(self, api: str, **params: str) -> dict[str, Any]:
        """Invoke one provider operation and return its JSON reply.

        Raises:
            TransportError: If the call could not complete.
            ProviderError: If the reply is not a JSON object.
        """
        url = f"{self.session.server}/sms/"
        query = {"api": api, **params}
        try:
            async with asyncio.timeout(self._timeout):
                async with self._client_factory(self._timeout, None) as client:
                    response = await client.get(url, params=query)
        except (httpx.HTTPError, TimeoutError) as exc:
            raise TransportError(url, exc) from exc

        text = response.text
        try:
            data = json.loads(text)
        except ValueError:
            msg = f"Provider returned non-JSON: {text[:200]}"
            raise ProviderError(msg) from None
        if not isinstance(data, dict):
            msg = f"Provider returned non-JSON: {text[:200]}"
            raise ProviderError(msg)
        return data

    def _scoped(self, **extra: str) -> dict[str, str]:
        return {"token": self.session.token, "sid": self.session.project_id, **extra}

    async def login(self, user: str | None = None, password: str | None = None) -> str:
        """Log in and return a fresh provider token.

        Args:
            user: Account name; defaults to the session's.
            password: Account password; defaults to the session's.

        Returns:
            The session token reported by the provider.

        Raises:
            ProviderError: If the provider rejects the credentials.
        """
        credentials = {
            "user": user or self.session.user,
            "pass": password or self.session.password,
        }
        data = await self._call("login", **credentials)
        if not _is_success(data, "0", "200"):
            msg = f"Provider login failed: {_describe(data)}"
            raise ProviderError(msg)
        return str(data.get("token", ""))

    async def summary(self) -> ProviderBalance:
        """Return the account balance and remaining quota."""
        data = await self._call("getSummary", token=self.session.token)
        if not _is_success(data):
            raise ProviderError(_describe(data))
        return ProviderBalance(money=data.get("money"), num=data.get("num"))

    async def acquire_number(self) -> str:
        """Rent a phone number for the configured project.

        Raises:
            ProviderError: If no number could be obtained.
        """
        data = await self._call("getPhone", **self._scoped())
        if not _is_success(data) or not data.get("phone"):
            msg = f"Failed to get phone number: {_describe(data)}"
            raise ProviderError(msg)
        return str(data["phone"])

    async def poll_message(self, phone: str) -> str | None:
        """Check once whether an SMS code arrived for *phone*.

        Returns:
            The code, or ``None`` if nothing has arrived yet.
        """
        data = await self._call("getMessage", **self._scoped(phone=phone))
        if _is_success(data) and data.get("yzm"):
            return str(data["yzm"])
        return None

    async def release(self, phone: str) -> None:
        """Cancel the reservation of *phone*. Errors are logged, not raised."""
        await self._best_effort("cancelRecv", phone)

    async def blacklist(self, phone: str) -> None:
        """Flag *phone* as unusable. Errors are logged, not raised."""
        await self._best_effort("addBlacklist", phone)

    async def _best_effort(self, api: str, phone: str) -> None:
        try:
            await self._call(api, **self._scoped(phone=phone))
        except (TransportError, ProviderError) as exc:
            logger.warning("Provider %s for %s failed: %s", api, phone, exc)
