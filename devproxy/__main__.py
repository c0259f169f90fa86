import argparse
import logging
import sys

from .config import ProxyConfig
from .server import ProxyServer


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="devproxy",
        description="Serve a single-page app and proxy API calls to a local backend."
    )
    parser.add_argument("--config", help="Path to a JSON configuration file")
    parser.add_argument("--host", help="Listen host")
    parser.add_argument("--port", type=int, help="Listen port")
    parser.add_argument("--backend-host", help="Backend host")
    parser.add_argument("--backend-port", type=int, help="Backend port")
    parser.add_argument("--static-root", help="Directory holding the static files")
    parser.add_argument("--timeout", type=float, help="Backend request timeout in seconds")
    parser.add_argument("--max-connections", type=int,
                        help="Cap on concurrently handled connections")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ProxyConfig:
    return ProxyConfig(
        args.config,
        host=args.host,
        port=args.port,
        backend_host=args.backend_host,
        backend_port=args.backend_port,
        static_root=args.static_root,
        timeout=args.timeout,
        max_connections=args.max_connections,
        log_level=args.log_level
    )


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config = build_config(args)
    except ValueError as e:
        print(f"devproxy: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    ProxyServer(config).start()
    return 0


if __name__ == "__main__":
    sys.exit(main())
