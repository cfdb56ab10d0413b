"""Bucket - Entry Point

Usage:
    python -m bucket [--config PATH] [--log-level LEVEL] [command]

Commands:
    run     - Start the service (default)
    health  - Check health status of a running instance
    version - Show version

Examples:
    python -m bucket
    python -m bucket --config config/production.toml
    python -m bucket --log-level DEBUG
    python -m bucket health --port 9090
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from bucket import __version__


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="bucket",
        description="File sharing service with a resilient database layer",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Bucket {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", help="Start the service")

    health_parser = subparsers.add_parser("health", help="Check health status")
    health_parser.add_argument("--host", default="localhost", help="Health server host")
    health_parser.add_argument("--port", type=int, default=9090, help="Health server port")

    subparsers.add_parser("version", help="Show version")

    return parser.parse_args(argv)


def find_config_file(specified: Optional[Path]) -> Optional[Path]:
    """Find configuration file."""
    if specified and specified.exists():
        return specified

    search_paths = [
        Path("config/default.toml"),
        Path("config/development.toml"),
        Path("config/production.toml"),
        Path("bucket.toml"),
        Path("/etc/bucket/bucket.toml"),
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None


async def run_service(args: argparse.Namespace) -> int:
    """Run the service until a shutdown signal arrives."""
    from bucket.app import BucketApp
    from bucket.core.config import ConfigManager
    from bucket.core.logging import get_logger

    config_path = find_config_file(args.config)
    config = ConfigManager(config_path)
    if args.log_level:
        config.set("bucket.log_level", args.log_level)

    app = BucketApp(config=config)
    log = get_logger("cli")
    log.info(
        "bucket_config_loaded",
        version=__version__,
        config=str(config_path) if config_path else "defaults",
    )

    try:
        await app.run_forever()
        return 0
    except Exception as e:
        log.error("fatal_error", error=str(e))
        return 1


async def check_health(host: str = "localhost", port: int = 9090) -> int:
    """Query /health of a running instance."""
    import httpx

    url = f"http://{host}:{port}/health"

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(url, timeout=5.0)

        data = response.json()
        print(f"Status: {data.get('status', 'unknown')}")
        print(f"Uptime: {data.get('uptime_seconds', 0):.0f}s")

        database = data.get("database", {})
        if database:
            print(f"  database healthy: {database.get('is_healthy')}")
            print(f"  latency: {database.get('latency_ms', 0):.1f}ms")
            print(
                f"  queries: {database.get('query_count', 0)}"
                f" (slow: {database.get('slow_query_count', 0)},"
                f" errors: {database.get('error_count', 0)})"
            )

        return 0 if response.status_code == 200 and data.get("status") == "healthy" else 1

    except httpx.ConnectError:
        print("Cannot connect to Bucket (is it running?)")
        return 1
    except Exception as e:
        print(f"Health check error: {e}")
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command == "version":
        print(f"Bucket {__version__}")
        return 0

    if args.command == "health":
        return asyncio.run(check_health(args.host, args.port))

    return asyncio.run(run_service(args))


if __name__ == "__main__":
    sys.exit(main())
