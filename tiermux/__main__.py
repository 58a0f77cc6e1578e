"""
tiermux — Dispatcher CLI

Usage:
    python -m tiermux
    python -m tiermux --port 50004 --root ~/S1 \
        --backend pdf=127.0.0.1:50005 \
        --backend text=127.0.0.1:50006 \
        --backend archive=127.0.0.1:50007

Then, from another terminal:
    python -m tiermux.shell 127.0.0.1 50004

Backends not given with --backend come from TIERMUX_<TIER>_ADDR
(or .env), then from the default ports on 127.0.0.1.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from tiercore.config import DispatcherConfig, parse_backend

from .server import DispatchServer


def main():
    load_dotenv()

    parser = argparse.ArgumentParser(
        description="Dispatcher routing files by extension across storage tiers"
    )
    parser.add_argument(
        '--port', type=int,
        help='Port to listen on (default: 50004)'
    )
    parser.add_argument(
        '--host',
        help='Host to bind to (default: 0.0.0.0)'
    )
    parser.add_argument(
        '--root',
        help='Directory for .c files and upload staging (default: ~/S1)'
    )
    parser.add_argument(
        '--alias',
        help='Virtual path alias clients use (default: ~S1)'
    )
    parser.add_argument(
        '--backend', action='append', default=[],
        help='Backend spec: tier=host:port, tier is pdf, text or archive (can be repeated)'
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

    config = DispatcherConfig.from_env()
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.root:
        config.root = Path(args.root).expanduser()
    if args.alias:
        config.alias = args.alias

    for spec in args.backend:
        try:
            ext, host, port = parse_backend(spec)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        config.routing.set(ext, host, port)

    print("tiermux — extension-routing dispatcher")
    print(f"  Listening: {config.host}:{config.port}")
    print(f"  Root:      {config.root} (alias {config.alias})")
    print(f"  Backends:")
    for ext, (host, port) in config.routing:
        print(f"    {ext.suffix:<5} → {ext.tier_name}@{host}:{port}")
    print()

    server = DispatchServer(config)

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
