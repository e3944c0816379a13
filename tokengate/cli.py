"""CLI entrypoints for tokengate operational tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence

from tokengate.config import GatewaySettings, configure_structlog, load_settings
from tokengate.exceptions import ConfigurationError, CredentialStoreError
from tokengate.gate import build_credential_store
from tokengate.logging import redact_mapping
from tokengate.store import CredentialSweeper


async def _run_sweep_credentials(settings: GatewaySettings) -> int:
    """Delete expired credential records from the shared Redis store once."""
    store = build_credential_store(settings)
    sweeper = CredentialSweeper(store, interval_seconds=settings.sweep_interval_seconds)
    try:
        removed = await sweeper.sweep_once()
    except CredentialStoreError as exc:
        print(json.dumps({"error": exc.code, "detail": exc.detail}), file=sys.stderr)
        return 1
    print(json.dumps({"removed": removed}))
    return 0


def _run_show_config(settings: GatewaySettings) -> int:
    """Print effective settings with secrets redacted."""
    values = settings.model_dump(mode="json")
    print(json.dumps(redact_mapping(values), indent=2, sort_keys=True))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    """Build command-line parser for supported operational commands."""
    parser = argparse.ArgumentParser(prog="tokengate")
    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser(
        "sweep-credentials",
        help="Remove expired access/refresh records from the Redis credential store.",
    )
    subcommands.add_parser("show-config", help="Print effective settings with secrets redacted.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run CLI command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        settings = load_settings()
    except ConfigurationError as exc:
        print(exc.detail, file=sys.stderr)
        return 2
    configure_structlog(settings)

    if args.command == "sweep-credentials":
        if not settings.redis_url:
            print("REDIS_URL is required to sweep a shared credential store.", file=sys.stderr)
            return 2
        return asyncio.run(_run_sweep_credentials(settings))
    if args.command == "show-config":
        return _run_show_config(settings)
    parser.error("Unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
