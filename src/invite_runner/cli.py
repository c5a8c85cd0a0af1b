"""CLI entry point for invite_runner.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``invite-runner = "invite_runner.cli:main"``. Loads
the config file, configures logging, and dispatches to the single-run,
auto-run, SMS and provider operations.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from typing import Any

from invite_runner.config import configure_logging, load_config
from invite_runner.errors import InviteRunnerError
from invite_runner.models import EventName, PipelineConfig, SingleRunRequest
from invite_runner.orchestrator import AutoRunner
from invite_runner.provider import CodeProviderClient
from invite_runner.runner import DEFAULT_APP_VERSION, run_single, trigger_sms
from invite_runner.transport import RequestDispatcher


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        Configured ``ArgumentParser`` with one subcommand per operation.
    """
    parser = argparse.ArgumentParser(
        prog="invite-runner",
        description="Run the configured login→invite workflow, once or unattended.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the pipeline config file (YAML or JSON).",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run one login→invite attempt.")
    run.add_argument("--phone", required=True)
    run.add_argument("--code", required=True, help="SMS code received on the phone.")
    run.add_argument("--invite-code", required=True)
    run.add_argument("--app-version", default="1.0.0")

    auto = commands.add_parser(
        "auto-run", help="Run attempts with numbers from the code provider."
    )
    auto.add_argument("--invite-code", required=True)
    auto.add_argument("--count", type=int, default=1)
    auto.add_argument("--app-version", default=DEFAULT_APP_VERSION)

    sms = commands.add_parser("send-sms", help="Trigger the SMS code for a phone.")
    sms.add_argument("--phone", required=True)

    commands.add_parser("provider-login", help="Log in to the code provider.")
    commands.add_parser("balance", help="Show the code-provider balance.")
    return parser


def _print_json(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


async def _run(config: PipelineConfig, args: argparse.Namespace) -> int:
    dispatcher = RequestDispatcher(config.proxy)
    request = SingleRunRequest(
        phone=args.phone,
        code=args.code,
        invite_code=args.invite_code,
        app_version=args.app_version,
    )
    result = await run_single(request, config, dispatcher)
    _print_json(result.model_dump(mode="json"))
    return 0 if result.success else 1


async def _auto_run(config: PipelineConfig, args: argparse.Namespace) -> int:
    runner = AutoRunner(
        config,
        CodeProviderClient(config.provider),
        RequestDispatcher(config.proxy),
        invite_code=args.invite_code,
        count=args.count,
        app_version=args.app_version,
    )
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, runner.cancel)

    exit_code = 0
    async for event in runner.events():
        sys.stdout.write(event.to_sse())
        sys.stdout.flush()
        if event.event is EventName.ERROR:
            exit_code = 1
    return exit_code


async def _send_sms(config: PipelineConfig, args: argparse.Namespace) -> int:
    outcome = await trigger_sms(args.phone, config, RequestDispatcher(config.proxy))
    _print_json(outcome.model_dump(mode="json"))
    return 0 if outcome.ok else 1


async def _provider_login(config: PipelineConfig, _: argparse.Namespace) -> int:
    if not config.provider.user or not config.provider.password:
        print("Error: provider user and password are not configured", file=sys.stderr)
        return 1
    token = await CodeProviderClient(config.provider).login()
    _print_json({"token": token})
    return 0


async def _balance(config: PipelineConfig, _: argparse.Namespace) -> int:
    balance = await CodeProviderClient(config.provider).summary()
    _print_json(balance.model_dump(mode="json"))
    return 0


_COMMANDS = {
    "run": _run,
    "auto-run": _auto_run,
    "send-sms": _send_sms,
    "provider-login": _provider_login,
    "balance": _balance,
}


def main(argv: list[str] | None = None) -> int:
    """Entry point for the invite-runner CLI application.

    Args:
        argv: Argument list; defaults to ``sys.argv[1:]``.

    Returns:
        Exit code: 0 on success, 1 on error or failed attempt.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        configure_logging(config)
        return asyncio.run(_COMMANDS[args.command](config, args))
    except (InviteRunnerError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
