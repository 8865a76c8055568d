"""
oobscan command line.

    oobscan discover [--provider docker]
    oobscan run descriptor.json [--once]
    oobscan remove descriptor.json [--once]

`run` and `remove` drive the reconciler to completion with `ScanDriver`;
`--once` performs a single reconcile call so an external scheduler can own
the retry loop (exit code 75 means "call again").
"""
import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

import structlog
from pydantic import ValidationError

from oobscan.core.exceptions import ConfigurationError, FatalError, RetryableError
from oobscan.core.tracing import setup_tracing
from oobscan.modules.scanning.domain.models import ScanJobDescriptor
from oobscan.modules.scanning.driver import ScanDriver
from oobscan.modules.scanning.providers import ScanProviderFactory
from oobscan.shared.core.config import Settings, get_settings, reload_settings_from_environment
from oobscan.shared.core.logging import setup_logging

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2
# sysexits EX_TEMPFAIL
EXIT_RETRY = 75


def load_descriptor(path: str) -> ScanJobDescriptor:
    raw = sys.stdin.read() if path == "-" else Path(path).read_text(encoding="utf-8")
    return ScanJobDescriptor.model_validate_json(raw)


def load_settings(provider_name: Optional[str]) -> Settings:
    """Settings validated for the provider that will actually run."""
    if provider_name:
        # Logging, tracing and in-call retries read the process-wide settings too.
        os.environ["SCAN_PROVIDER"] = provider_name
        return reload_settings_from_environment()
    return get_settings()


async def _discover(provider_name: Optional[str], settings: Settings) -> int:
    async with ScanProviderFactory.get_provider(provider_name, settings) as provider:
        assets = await provider.discover_assets()
    for asset in assets:
        print(asset.model_dump_json())
    return EXIT_OK


async def _reconcile(
    command: str,
    provider_name: Optional[str],
    settings: Settings,
    descriptor: ScanJobDescriptor,
    once: bool,
) -> int:
    async with ScanProviderFactory.get_provider(provider_name, settings) as provider:
        if once:
            step = provider.run_asset_scan if command == "run" else provider.remove_asset_scan
            try:
                await step(descriptor)
            except RetryableError as exc:
                print(
                    json.dumps(
                        {
                            "status": "retry",
                            "reason": exc.reason,
                            "suggested_delay_seconds": exc.suggested_delay.total_seconds(),
                        }
                    )
                )
                return EXIT_RETRY
        else:
            driver = ScanDriver.from_settings(provider, settings)
            if command == "run":
                await driver.run(descriptor)
            else:
                await driver.remove(descriptor)
    print(json.dumps({"status": "done", "asset_scan_id": descriptor.asset_scan_id}))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oobscan",
        description="Provision and tear down out-of-band scan infrastructure.",
    )
    parser.add_argument(
        "--provider",
        default=None,
        help="Scan provider (azure, aws, gcp, docker). Defaults to SCAN_PROVIDER.",
    )
    parser.add_argument(
        "--trace-console",
        action="store_true",
        help="Export spans to stderr when no OTLP endpoint is configured.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("discover", help="List scannable assets as JSON lines.")
    for name, help_text in (
        ("run", "Create snapshot, volume and scanner for a scan job."),
        ("remove", "Delete everything a scan job created."),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("descriptor", help="Path to a scan job descriptor JSON file, or - for stdin.")
        command.add_argument(
            "--once",
            action="store_true",
            help="Perform a single reconcile call instead of driving to completion.",
        )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args.provider)
    except ValidationError as exc:
        logger.error("configuration_invalid", error=str(exc))
        return EXIT_USAGE
    setup_logging()
    setup_tracing(console_fallback=args.trace_console)

    descriptor = None
    if args.command != "discover":
        try:
            descriptor = load_descriptor(args.descriptor)
        except (ValidationError, OSError) as exc:
            logger.error("descriptor_invalid", error=str(exc))
            return EXIT_USAGE

    try:
        if descriptor is None:
            return asyncio.run(_discover(args.provider, settings))
        return asyncio.run(_reconcile(args.command, args.provider, settings, descriptor, args.once))
    except ConfigurationError as exc:
        logger.error("configuration_invalid", error=exc.message, code=exc.code)
        return EXIT_USAGE
    except FatalError as exc:
        logger.error("scan_failed", error=exc.reason, code=exc.code)
        return EXIT_FATAL


if __name__ == "__main__":
    raise SystemExit(main())
