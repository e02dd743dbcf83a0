"""
Command-line interface for the Cloudflare guard.

This module provides the main CLI entry point with commands for:
- check: Check addresses against the configured trusted ranges
- ranges: Fetch and print the current Cloudflare IP ranges
- config: Configuration management
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .audit_logger import AuditLogger
from .cidr import CIDRSet, parse_ip
from .cloudflare_client import CloudflareClient
from .config import (
    GuardConfig,
    load_config_from_env,
    load_config_from_file,
    save_config_to_file,
)
from .exceptions import ConfigError, FetchError
from .guard import create_guard

# Exit codes
EXIT_OK = 0
EXIT_DENIED = 1
EXIT_ERROR = 2

DEFAULT_CONFIG_PATH = Path.home() / ".cloudflare_guard" / "config.json"


def resolve_config(config_path: Optional[str]) -> GuardConfig:
    """
    Load configuration from a file if given, else from the environment.

    Raises:
        ConfigError: If the configuration cannot be loaded or is invalid
    """
    if config_path:
        config = load_config_from_file(Path(config_path))
    else:
        config = load_config_from_env()
    config.validate()
    return config


async def check_addresses(
    addresses: list[str],
    config: GuardConfig,
    logger: Optional[AuditLogger] = None,
) -> int:
    """
    Check each address and print the verdict.

    Returns:
        EXIT_OK if all addresses are trusted, EXIT_DENIED otherwise
    """
    guard = await create_guard(config, logger=logger)
    denied = 0
    try:
        for address in addresses:
            try:
                ip = parse_ip(address)
            except ValueError:
                print(f"{address}: invalid address")
                denied += 1
                continue

            trusted = await guard.checker.check_ip(ip)
            print(f"{address}: {'trusted' if trusted else 'denied'}")
            if not trusted:
                denied += 1
    finally:
        await guard.aclose()

    return EXIT_OK if denied == 0 else EXIT_DENIED


async def fetch_ranges(config: GuardConfig) -> CIDRSet:
    """Fetch the current IP list once."""
    async with CloudflareClient(
        endpoint=config.ips_endpoint,
        timeout=config.fetch_timeout,
    ) as client:
        return await client.fetch_ips()


def cmd_check(args: argparse.Namespace) -> int:
    """Handle the 'check' command."""
    try:
        config = resolve_config(args.config)
        logger = AuditLogger.from_config(config.logging) if args.verbose else None
        return asyncio.run(check_addresses(args.addresses, config, logger))
    except (ConfigError, FetchError) as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_ERROR


def cmd_ranges(args: argparse.Namespace) -> int:
    """Handle the 'ranges' command."""
    try:
        config = resolve_config(args.config)
        cidrs = asyncio.run(fetch_ranges(config))
    except (ConfigError, FetchError) as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_ERROR

    if args.json:
        ipv4 = [str(n) for n in cidrs if n.version == 4]
        ipv6 = [str(n) for n in cidrs if n.version == 6]
        print(json.dumps({"ipv4_cidrs": ipv4, "ipv6_cidrs": ipv6}, indent=2))
    else:
        for cidr in cidrs.to_strings():
            print(cidr)
    return EXIT_OK


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config_path = Path(args.path) if args.path else DEFAULT_CONFIG_PATH

    if args.action == "init":
        if config_path.exists() and not args.force:
            print(f"Configuration already exists at: {config_path}")
            print("Use --force to overwrite.")
            return EXIT_DENIED

        try:
            save_config_to_file(GuardConfig(), config_path)
        except OSError as e:
            print(f"Error writing configuration: {e}", file=sys.stderr)
            return EXIT_ERROR
        print(f"Configuration created at: {config_path}")
        return EXIT_OK

    try:
        config = load_config_from_file(config_path)
        if args.action == "validate":
            config.validate()
    except ConfigError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_ERROR

    if args.action == "show":
        print(f"Configuration from: {config_path}")
        if config.uses_static_ranges:
            print(f"  Trusted CIDRs: {', '.join(config.trusted_cidrs)}")
        else:
            print(f"  IP list endpoint: {config.ips_endpoint}")
            print(f"  Refresh interval: {config.refresh_interval}")
        print(f"  Overwrite {config.forwarded_for_header}: {config.overwrite_forwarded_for}")
        print(f"  Client IP header: {config.client_ip_header}")
        print(f"  Log level: {config.logging.level}")
        return EXIT_OK

    print(f"Configuration at {config_path} is valid.")
    return EXIT_OK


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="cloudflare-guard",
        description="Admit traffic only from Cloudflare (or configured) IP ranges",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # 'check' command
    check_parser = subparsers.add_parser(
        "check",
        help="Check addresses against the trusted ranges",
    )
    check_parser.add_argument(
        "addresses",
        nargs="+",
        help="IP addresses to check",
    )
    check_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file (default: environment)",
    )
    check_parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable log output",
    )
    check_parser.set_defaults(func=cmd_check)

    # 'ranges' command
    ranges_parser = subparsers.add_parser(
        "ranges",
        help="Fetch and print the current Cloudflare IP ranges",
    )
    ranges_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file (default: environment)",
    )
    ranges_parser.add_argument(
        "--json",
        action="store_true",
        help="Print as JSON grouped by address family",
    )
    ranges_parser.set_defaults(func=cmd_ranges)

    # 'config' command
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "init", "validate"],
        help="Configuration action",
    )
    config_parser.add_argument(
        "--path", "-p",
        help="Path to configuration file",
    )
    config_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Force overwrite existing configuration",
    )
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
