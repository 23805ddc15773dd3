import argparse
import logging
import os
import sys
from typing import List, Optional, Tuple

import uvicorn

from datasources import ConfigError, load_config
from main import create_app

logger = logging.getLogger(__name__)

DEFAULT_LISTEN = ":8080"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def parse_listen(listen: str) -> Tuple[str, int]:
    """
    Split a listen address into host and port.

    Args:
        listen: "host:port", ":port" or "[ipv6]:port"; an empty host means
            all interfaces

    Returns:
        tuple: (host, port)
    """
    host, sep, port = listen.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address: {listen!r}")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prom-query-proxy",
        description="Route Prometheus API queries to the datasource with the best resolution and retention",
    )
    parser.add_argument("--config", "-config", default=os.environ.get("PROM_QUERY_PROXY_CONFIG", ""),
                        help="Path to config file")
    parser.add_argument("--listen", "-listen", default=os.environ.get("PROM_QUERY_PROXY_LISTEN") or DEFAULT_LISTEN,
                        help="Address to listen on")
    parser.add_argument("--log-level", default=os.environ.get("PROM_QUERY_PROXY_LOG_LEVEL") or "INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], type=str.upper,
                        help="Logging level")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.config:
        parser.error("-config option is required")
    try:
        host, port = parse_listen(args.listen)
    except ValueError as e:
        parser.error(str(e))

    logging.basicConfig(level=args.log_level, format=LOG_FORMAT)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error("Error loading config: %s", e)
        return 1

    for ds in config.datasources:
        logger.info("Datasource: %s", ds)

    app = create_app(config.datasources)
    logger.info("Listening %s", args.listen)
    uvicorn.run(app, host=host, port=port, log_level=args.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
