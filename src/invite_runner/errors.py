"""Exception taxonomy shared by the dispatcher, runner, provider and orchestrator.

Configuration and rule-syntax errors are fatal and escape to the caller.
Transport and provider errors abort the current stage or iteration only.
Soft pipeline outcomes (non-JSON response, failed rule, missing token,
failed invite) are never raised; they are reported as
``models.FailureKind`` values on ``PipelineOutcome``.
"""

from __future__ import annotations


class InviteRunnerError(Exception):
    """Base class for all errors raised by invite_runner."""


class ConfigError(InviteRunnerError):
    """Configuration is missing, malformed, or lacks required credentials."""


class RuleSyntaxError(InviteRunnerError, ValueError):
    """A ``success_rule`` does not match the ``<path> == <literal>`` grammar.

    Also a ``ValueError`` so that Pydantic validators report it as a
    validation error of the offending config field.
    """


class TransportError(InviteRunnerError):
    """The HTTP call could not complete (DNS, connect, timeout, protocol).

    Attributes:
        url: Target URL of the failed call.
        cause: The underlying transport exception.
    """

    def __init__(self, url: str, cause: BaseException) -> None:
        """Initialize with the target URL and the underlying exception.

        Args:
            url: Target URL of the failed call.
            cause: The exception raised by the HTTP client.
        """
        detail = str(cause) or type(cause).__name__
        super().__init__(f"Request to {url} failed: {detail}")
        self.url = url
        self.cause = cause

    @property
    def detail(self) -> str:
        """Short description of the underlying cause."""
        return str(self.cause) or type(self.cause).__name__


class ProviderError(InviteRunnerError):
    """The code-provider replied with a non-success code or a non-JSON body."""
