"""CLI entry point: python -m access_guard.

Usage:
    python -m access_guard --check --email jane@example.com
    echo 'candidate' | python -m access_guard --check --password-stdin --json
    python -m access_guard --generate 20
    python -m access_guard --show-policy
    python -m access_guard --self-test
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from access_guard.config import Settings
from access_guard.models import UserContext

PASSING_STRENGTHS = {"good", "strong", "very-strong"}


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="access_guard",
        description="Password strength and breach analysis, with fail-secure rate limiting and session checks.",
    )
    p.add_argument("--env", type=Path, help="Path to a .env file with ACCESS_GUARD_* settings")
    p.add_argument("--check", action="store_true", help="Analyse a password (prompted, never echoed)")
    p.add_argument("--password-stdin", action="store_true", help="With --check, read the password from stdin")
    p.add_argument("--email", help="Email address the password must not contain")
    p.add_argument("--name", help="Full name the password must not contain")
    p.add_argument("--username", help="Username the password must not contain")
    p.add_argument("--offline", action="store_true", help="Skip the remote breach oracle; use the local denylist")
    p.add_argument("--generate", type=int, metavar="LENGTH", help="Generate a password satisfying the policy")
    p.add_argument("--show-policy", action="store_true", help="Print the active password policy")
    p.add_argument("--json", action="store_true", help="Print JSON results to stdout")
    p.add_argument("--self-test", action="store_true", help="Run invariant self-test suite")
    p.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    p.add_argument("--version", action="store_true", help="Show version and exit")
    return p


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _read_password(from_stdin: bool) -> str:
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    return getpass.getpass("Password: ")


def main() -> int:
    args = _build_parser().parse_args()
    console = Console()
    _configure_logging(args.verbose)

    if args.version:
        from access_guard import __version__
        console.print(f"access_guard {__version__}")
        return 0

    if args.self_test:
        from access_guard.self_test import run_self_test
        ok = asyncio.run(run_self_test(console))
        return 0 if ok else 1

    try:
        settings = Settings.from_env(args.env)
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 2

    from access_guard.evaluator import PasswordStrengthEvaluator
    from access_guard.breach import BreachOracleClient
    from access_guard.output import render_analysis, render_policy, to_json

    if args.show_policy or args.generate is not None:
        evaluator = PasswordStrengthEvaluator(BreachOracleClient(None, offline=True))
        if args.show_policy:
            policy = evaluator.policy_store.current
            if args.json:
                print(to_json(policy.to_dict()))
            else:
                render_policy(policy, console)
        if args.generate is not None:
            try:
                print(evaluator.generate(args.generate))
            except ValueError as exc:
                console.print(f"[red]{exc}[/red]")
                return 2
        return 0

    if not args.check:
        console.print("[red]Nothing to do: use --check, --generate, --show-policy or --self-test[/red]")
        return 2

    password = _read_password(args.password_stdin)
    if not password:
        console.print("[red]Empty password[/red]")
        return 2
    context = UserContext(email=args.email, name=args.name, username=args.username)

    from access_guard.orchestrator import open_services

    async def _analyse():
        async with open_services(settings, offline=args.offline) as services:
            return await services.evaluator.evaluate(password, user_context=context)

    result = asyncio.run(_analyse())

    if args.json:
        print(to_json(result.to_dict()))
    else:
        render_analysis(result, console)

    return 0 if result.strength in PASSING_STRENGTHS else 1


if __name__ == "__main__":
    sys.exit(main())
