"""Command-line interface for perfscope."""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from .config import NETWORK_PRESETS, ProfilerConfig
from .core.connector import ChromeConnector, ChromeConnectionError
from .errors import PerfscopeError
from .session import COLLECTOR_ORDER, RecordingOptions, SessionCoordinator


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s"
    )


logger = logging.getLogger(__name__)


async def test_connection(host: str, port: int) -> int:
    """Test connection to Chrome and display version information."""
    connector = ChromeConnector(host=host, port=port)

    try:
        print(f"Connecting to Chrome at {host}:{port}...")
        await connector.connect()
        print("✓ Connected successfully")

        version_info = await connector.get_browser_version()
        print("\nChrome Browser Information:")
        print(f"  Browser: {version_info.get('product', 'Unknown')}")
        print(f"  Protocol Version: {version_info.get('protocolVersion', 'Unknown')}")
        print(f"  User Agent: {version_info.get('userAgent', 'Unknown')}")
        print(f"  V8 Version: {version_info.get('jsVersion', 'Unknown')}")
        return 0

    except ChromeConnectionError as e:
        print(f"✗ Connection failed: {e}")
        print("\nMake sure Chrome is running with the debug port enabled:")
        print(f"   chrome --remote-debugging-port={port}")
        return 1

    finally:
        if connector.is_connected:
            await connector.disconnect()


async def list_tabs(host: str, port: int) -> int:
    """List open page targets as JSON."""
    connector = ChromeConnector(host=host, port=port)

    try:
        await connector.connect()
        pages = connector.filter_page_targets(await connector.get_targets())
        tabs = [
            {"id": p.get("targetId"), "title": p.get("title", ""), "url": p.get("url", "")}
            for p in pages
        ]
        print(json.dumps(tabs, indent=2, ensure_ascii=False))
        return 0

    except ChromeConnectionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    finally:
        if connector.is_connected:
            await connector.disconnect()


def parse_collectors(value: str) -> List[str]:
    names = [name.strip() for name in value.split(",") if name.strip()]
    unknown = [name for name in names if name not in COLLECTOR_ORDER]
    if unknown:
        raise argparse.ArgumentTypeError(f"unknown collectors: {', '.join(unknown)}")
    return names


async def record(host: str, port: int, config: ProfilerConfig, collectors: List[str],
                 url: Optional[str] = None, duration: float = 5.0, screenshots: bool = False,
                 target_id: Optional[str] = None, indent: Optional[int] = 2) -> int:
    """Record one interaction and print the report as JSON."""
    options = RecordingOptions(screenshots=screenshots, **{name: True for name in collectors})

    try:
        async with SessionCoordinator(config, host=host, port=port, target_id=target_id) as session:
            await session.start(options)
            if url:
                logger.info(f"Navigating to {url}")
                await session.navigate(url)
            if duration > 0:
                await asyncio.sleep(duration)
            if screenshots:
                await session.take_screenshot()
            report = await session.stop()

    except ChromeConnectionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except PerfscopeError as e:
        print(f"Recording failed: {e}", file=sys.stderr)
        return 1

    print(json.dumps(report.to_dict(), indent=indent, ensure_ascii=False))
    return 1 if report.errors else 0


def get_default_host() -> str:
    """Get default host from environment or use 127.0.0.1."""
    return os.environ.get("CHROME_DEBUG_HOST", "127.0.0.1")


def get_default_port() -> int:
    """Get default port from environment or use 9222."""
    try:
        return int(os.environ.get("CHROME_DEBUG_PORT", "9222"))
    except ValueError:
        return 9222


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="perfscope - record page performance through the Chrome DevTools Protocol"
    )

    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Test connection to Chrome and display version information"
    )

    parser.add_argument(
        "--list-tabs",
        action="store_true",
        help="List open Chrome tabs in JSON format"
    )

    parser.add_argument(
        "--record",
        action="store_true",
        help="Record a performance profile and print the report as JSON"
    )

    parser.add_argument(
        "--url",
        help="Navigate to this URL after recording starts"
    )

    parser.add_argument(
        "--duration",
        type=float,
        default=5.0,
        help="Seconds to keep recording after navigation (default: 5)"
    )

    parser.add_argument(
        "--collectors",
        type=parse_collectors,
        default=list(COLLECTOR_ORDER),
        help=f"Comma-separated collectors to run (default: {','.join(COLLECTOR_ORDER)})"
    )

    parser.add_argument(
        "--preset",
        choices=sorted(ProfilerConfig.PRESETS),
        default="default",
        help="Configuration preset"
    )

    parser.add_argument(
        "--network-throttling",
        choices=sorted(NETWORK_PRESETS),
        help="Network throttling preset (overrides the config preset)"
    )

    parser.add_argument(
        "--cpu-throttling",
        type=float,
        help="CPU slowdown rate, 1 means no throttling (overrides the config preset)"
    )

    parser.add_argument(
        "--screenshots",
        action="store_true",
        help="Attach a screenshot to the timeline report"
    )

    parser.add_argument(
        "--target",
        help="Target id of the tab to record (default: first open page)"
    )

    parser.add_argument(
        "--host",
        default=get_default_host(),
        help="Chrome debug host (default: %(default)s)"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=get_default_port(),
        help="Chrome debug port (default: %(default)s)"
    )

    parser.add_argument(
        "--compact",
        action="store_true",
        help="Print the report without indentation"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.test_connection:
        return await test_connection(args.host, args.port)
    if args.list_tabs:
        return await list_tabs(args.host, args.port)
    if args.record:
        overrides = {}
        if args.network_throttling:
            overrides["network_throttling"] = args.network_throttling
        if args.cpu_throttling is not None:
            overrides["cpu_throttling"] = args.cpu_throttling
        config = ProfilerConfig.preset(args.preset, **overrides)
        return await record(
            args.host, args.port, config, args.collectors,
            url=args.url,
            duration=args.duration,
            screenshots=args.screenshots,
            target_id=args.target,
            indent=None if args.compact else 2,
        )

    parser.print_help()
    return 0


def cli_entry_point():
    """Entry point for pip-installed command."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli_entry_point()
