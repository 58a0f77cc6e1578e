"""
tierstore — Backend Storage Service CLI

Usage:
    python -m tierstore --tier pdf
    python -m tierstore --tier text --port 50006 --root ~/S3
    python -m tierstore --tier archive --alias '~S4' -v

Settings not given on the command line come from TIERMUX_<TIER>_*
environment variables (or .env), then from the built-in defaults.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from tiercore.config import StorageConfig
from tiercore.types import ExtensionClass, TIER_ORDER

from .server import StorageServer


def main():
    load_dotenv()

    parser = argparse.ArgumentParser(
        description="Storage tier for one file extension"
    )
    parser.add_argument(
        '--tier', required=True,
        choices=[ext.tier_name for ext in TIER_ORDER],
        help='Extension class this instance stores'
    )
    parser.add_argument(
        '--port', type=int,
        help='Port to listen on (default: from environment or tier default)'
    )
    parser.add_argument(
        '--host',
        help='Host to bind to (default: 0.0.0.0)'
    )
    parser.add_argument(
        '--root',
        help='Storage directory (default: ~/S2, ~/S3 or ~/S4)'
    )
    parser.add_argument(
        '--alias',
        help='Virtual path alias for this tier (default: ~S2, ~S3 or ~S4)'
    )
    parser.add_argument(
        '--verbose', '-v', action='store_true',
        help='Enable verbose logging'
    )
    parser.add_argument(
        '--debug', action='store_true',
        help='Enable debug logging'
    )

    args = parser.parse_args()

    level = logging.WARNING
    if args.verbose:
        level = logging.INFO
    if args.debug:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format='%(asctime)s %(name)s %(levelname)s %(message)s',
        datefmt='%H:%M:%S'
    )

    tier = ExtensionClass.from_token(args.tier)
    config = StorageConfig.from_env(tier)
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.root:
        config.root = Path(args.root).expanduser()
    if args.alias:
        config.alias = args.alias

    print(f"tierstore — {tier.tier_name} tier ({tier.suffix})")
    print(f"  Listening: {config.host}:{config.port}")
    print(f"  Root:      {config.root}")
    print(f"  Alias:     {config.alias}")
    print()

    server = StorageServer(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def shutdown(sig):
        print(f"\nShutting down (signal {sig})...")
        loop.create_task(server.stop())

    if sys.platform != 'win32':
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown, sig)

    try:
        loop.run_until_complete(server.serve_tcp())
    except asyncio.CancelledError:
        pass
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == '__main__':
    main()
