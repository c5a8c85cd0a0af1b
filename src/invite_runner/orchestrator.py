"""Auto-run orchestrator: repeated unattended login→invite attempts.

Each iteration rents a phone number from the code-provider, makes the
target service send an SMS code to it, polls the provider for that code,
and runs the login→invite pipeline with it::

    getPhone → sendSms → waitSms → loginAndInvite

Iterations run strictly one after another. Progress is streamed to the
caller as ``RunEvent``s: a ``progress`` event whenever an iteration enters
a new state, a ``result`` event per iteration, and a final ``done`` event
with the totals. Pre-run problems (missing invite code or provider
credentials) produce a single ``error`` event instead.

Cancellation is cooperative: ``AutoRunner.cancel()`` is observed before
each iteration and at every delay (SMS retry delay, poll interval,
inter-iteration delay). In-flight HTTP calls are never interrupted.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import contextlib
import json
import logging
import time
from typing import Any

from pydantic import BaseModel

from invite_runner.errors import ConfigError, TransportError
from invite_runner.models import (
    AutoRunStep,
    EventName,
    IterationStage,
    PipelineConfig,
    ProgressUpdate,
    RunEvent,
    RunSummary,
)
from invite_runner.provider import CodeProviderClient
from invite_runner.runner import (
    DEFAULT_APP_VERSION,
    build_variables,
    generate_device,
    run_login_and_invite,
    trigger_sms,
)
from invite_runner.transport import RequestDispatcher

logger = logging.getLogger(__name__)


class IterationState(BaseModel):
    """Mutable scratch state of the iteration in flight.

    Frozen into an ``AutoRunStep`` once the iteration concludes.
    """

    index: int
    phone: str | None = None
    success: bool = False
    stage: str | None = None
    reason: str | None = None
    transports: list[str] = []

    def freeze(self) -> AutoRunStep:
        """Return the immutable step reported for this iteration."""
        return AutoRunStep(**self.model_dump())


class PhoneReservation:
    """Async context holding the phone number rented for one iteration.

    On exit the number is handed back to the provider: blacklisted when
    ``bad_number`` is set, released otherwise. Nothing happens if no
    number was obtained. Provider errors during the hand-back are logged
    by the provider client and never raised.
    """

    def __init__(self, provider: CodeProviderClient) -> None:
        self._provider = provider
        self.phone: str | None = None
        self.bad_number = False

    async def __aenter__(self) -> PhoneReservation:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self.phone is None:
            return
        if self.bad_number:
            logger.info("Blacklisting %s", self.phone)
            await self._provider.blacklist(self.phone)
        else:
            logger.info("Releasing %s", self.phone)
            await self._provider.release(self.phone)


class AutoRunner:
    """Drives ``count`` sequential pipeline iterations against the provider.

    Attributes:
        count: Number of iterations requested.
        invite_code: Invite code submitted by every iteration.
    """

    def __init__(
        self,
        config: PipelineConfig,
        provider: CodeProviderClient,
        dispatcher: RequestDispatcher,
        *,
        invite_code: str,
        count: int = 1,
        app_version: str | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            config: Pipeline configuration (stages, SMS call, timings).
            provider: Code-provider client.
            dispatcher: Request dispatcher for the SMS and pipeline calls.
            invite_code: Invite code to submit.
            count: Iterations to run; values below 1 run once.
            app_version: App version reported in device fingerprints.
        """
        self._config = config
        self._settings = config.auto_run
        self._provider = provider
        self._dispatcher = dispatcher
        self.invite_code = (invite_code or "").strip()
        self.count = max(1, count or 1)
        self._app_version = app_version or DEFAULT_APP_VERSION
        self._cancel_event = asyncio.Event()
        self._aborted = False
        self._success = 0
        self._fail = 0

    # -- cancellation -------------------------------------------------------

    def cancel(self) -> None:
        """Request cooperative cancellation."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._cancel_event.is_set()

    async def _pause(self, seconds: float) -> bool:
        """Wait *seconds* unless cancelled first; return whether cancelled."""
        if self.cancelled:
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    # -- event stream -------------------------------------------------------

    def _preflight(self) -> str | None:
        if not self.invite_code:
            return "Invite code must not be empty"
        if not self._provider.session.token:
            return "Provider token is missing; log in to the code provider first"
        if not self._provider.session.project_id:
            return "Provider project id (sid) is missing"
        return None

    def summary(self) -> RunSummary:
        """Totals over the iterations run so far."""
        return RunSummary(
            total=self._success + self._fail,
            success=self._success,
            fail=self._fail,
        )

    async def events(self) -> AsyncIterator[RunEvent]:
        """Run the iterations, yielding progress, result and done events.

        Yields:
            ``RunEvent`` objects in stream order.
        """
        problem = self._preflight()
        if problem is not None:
            logger.error("Auto-run not started: %s", problem)
            yield RunEvent.of(EventName.ERROR, {"error": problem})
            return

        logger.info("Auto-run start: %d iteration(s)", self.count)
        for index in range(1, self.count + 1):
            if self.cancelled or self._aborted:
                logger.info("Auto-run stopped before iteration %d", index)
                break
            async with contextlib.aclosing(self._run_iteration(index)) as iteration:
                async for event in iteration:
                    yield event
            if index < self.count and await self._pause(self._settings.iteration_delay):
                logger.info("Auto-run cancelled after iteration %d", index)
                break

        summary = self.summary()
        logger.info(
            "Auto-run done: total=%d success=%d fail=%d",
            summary.total,
            summary.success,
            summary.fail,
        )
        yield RunEvent.of(EventName.DONE, summary)

    def _progress(self, state: IterationState, stage: IterationStage) -> RunEvent:
        state.stage = stage.value
        logger.info("[%d/%d] %s phone=%s", state.index, self.count, stage, state.phone)
        return RunEvent.of(
            EventName.PROGRESS,
            ProgressUpdate(
                current=state.index, total=self.count, stage=stage, phone=state.phone
            ),
        )

    async def _run_iteration(self, index: int) -> AsyncIterator[RunEvent]:
        state = IterationState(index=index)
        try:
            async with PhoneReservation(self._provider) as reservation:
                yield self._progress(state, IterationStage.GET_PHONE)
                state.phone = await self._provider.acquire_number()
                reservation.phone = state.phone

                yield self._progress(state, IterationStage.SEND_SMS)
                if await self._send_sms(state):
                    yield self._progress(state, IterationStage.WAIT_SMS)
                    code = await self._wait_for_code(state, reservation)
                    if code is not None:
                        yield self._progress(state, IterationStage.LOGIN_AND_INVITE)
                        await self._login_and_invite(state, code)
        except ConfigError as exc:
            logger.error("Iteration %d aborted by configuration error: %s", index, exc)
            state.success = False
            state.reason = str(exc)
            self._aborted = True
        except Exception as exc:
            logger.exception("Iteration %d failed at %s", index, state.stage)
            state.success = False
            state.reason = str(exc) or type(exc).__name__

        step = state.freeze()
        if step.success:
            self._success += 1
        else:
            self._fail += 1
        yield RunEvent.of(EventName.RESULT, step)

    # -- states ---------------------------------------------------------------

    async def _send_sms(self, state: IterationState) -> bool:
        """Trigger the SMS, retrying with a fixed delay; return whether it was sent."""
        phone = state.phone or ""
        attempts = self._settings.sms_attempts
        for attempt in range(1, attempts + 1):
            try:
                outcome = await trigger_sms(phone, self._config, self._dispatcher)
            except TransportError as exc:
                state.reason = f"SMS send failed: {exc.detail}"
            else:
                if outcome.ok:
                    state.reason = None
                    return True
                state.reason = f"SMS send failed: HTTP {outcome.status}"
            logger.warning(
                "SMS send attempt %d/%d for %s failed: %s",
                attempt,
                attempts,
                phone,
                state.reason,
            )
            if attempt < attempts and await self._pause(self._settings.sms_retry_delay):
                break
        return False

    async def _wait_for_code(
        self, state: IterationState, reservation: PhoneReservation
    ) -> str | None:
        """Poll for the SMS code until it arrives, the deadline passes, or cancel."""
        phone = state.phone or ""
        interval = self._settings.poll_interval
        timeout = self._settings.sms_wait_timeout
        deadline = time.monotonic() + timeout

        while time.monotonic() < deadline and not self.cancelled:
            code = await self._provider.poll_message(phone)
            if code:
                return code
            if time.monotonic() + interval >= deadline:
                break
            if await self._pause(interval):
                break

        if self.cancelled:
            state.reason = "Cancelled while waiting for SMS code"
        else:
            state.reason = f"Timed out waiting for SMS code ({timeout:g}s)"
            reservation.bad_number = True
        return None

    async def _login_and_invite(self, state: IterationState, code: str) -> None:
        device = generate_device(self._app_version)
        variables = build_variables(
            phone=state.phone or "",
            code=code,
            invite_code=self.invite_code,
            device=device,
        )
        outcome = await run_login_and_invite(variables, self._config, self._dispatcher)
        state.success = outcome.success
        state.stage = outcome.stage or "invite"
        state.transports = list(outcome.transports_used)
        if outcome.success:
            state.reason = json.dumps(outcome.invite_response, ensure_ascii=False)
        else:
            state.reason = outcome.reason
