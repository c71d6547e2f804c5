"""
Command line entry point.

Usage:
    mongodb-query-exporter -f config.yaml
    mongodb-query-exporter -f config.yaml -u mongodb://db:27017 -b :9412

Precedence: flags > MDBEXPORTER_* environment (and .env) > config file >
built-in defaults.
"""
import argparse
import logging
import sys
from typing import List, Optional, Tuple

import uvicorn
from dotenv import load_dotenv
from prometheus_client import CollectorRegistry
from pydantic import ValidationError

from . import __version__
from .collector import QueryExporterError
from .core.config import LOG_ENCODINGS, Settings, parse_duration
from .core.log_setup import configure_logging, parse_level
from .exporter_config import (
    ConfigError,
    apply_overrides,
    build_collector,
    find_config_file,
    load_config,
)
from .main import create_app

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1

_UVICORN_LEVELS = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warning",
    logging.ERROR: "error",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mongodb-query-exporter",
        description="MongoDB aggregation pipeline Prometheus exporter.",
    )
    # Every default is None: unset flags must not override env or file values.
    parser.add_argument("-f", "--file", default=None, help="Config file path.")
    parser.add_argument("-u", "--uri", default=None, help="MongoDB URI of the first server.")
    parser.add_argument(
        "-l", "--log-level", default=None, help="Log level (debug, info, warn, error)."
    )
    parser.add_argument(
        "-e", "--log-encoding", default=None, choices=LOG_ENCODINGS, help="Log encoding."
    )
    parser.add_argument("-b", "--bind", default=None, help="Bind address, e.g. :9412.")
    parser.add_argument("-p", "--path", default=None, help="Metrics path.")
    parser.add_argument(
        "-t", "--query-timeout", type=parse_duration, default=None,
        help="Query timeout, seconds or a duration like 10s.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def parse_bind(bind: str) -> Tuple[str, int]:
    """':9412' → ('0.0.0.0', 9412); '[::1]:9412' → ('::1', 9412)."""
    host, sep, port = bind.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid bind address {bind!r}, expected [host]:port")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()

    try:
        env = Settings().explicit()
        config = load_config(find_config_file(args.file or env.get("config_file")))
        apply_overrides(config, [
            ("bind", env.get("bind")),
            ("metrics_path", env.get("metrics_path")),
            ("log.level", env.get("log_level")),
            ("log.encoding", env.get("log_encoding")),
            ("global_.query_timeout", env.get("mongodb_query_timeout")),
            ("bind", args.bind),
            ("metrics_path", args.path),
            ("log.level", args.log_level),
            ("log.encoding", args.log_encoding),
            ("global_.query_timeout", args.query_timeout),
        ])
        config.resolve_defaults()
        configure_logging(config.log.level, config.log.encoding)
        host, port = parse_bind(config.bind)
        collector = build_collector(config, primary_uri=args.uri or env.get("mongodb_uri"))
    except (ConfigError, ValidationError, ValueError, QueryExporterError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    registry = CollectorRegistry()
    registry.register(collector)
    started = collector.start_cache_invalidator()
    logger.info(f"[CLI] {started} change stream watcher(s) started")

    app = create_app(registry, config.metrics_path)
    try:
        uvicorn.run(
            app,
            host=host,
            port=port,
            log_level=_UVICORN_LEVELS.get(parse_level(config.log.level), "warning"),
            log_config=None,
        )
    finally:
        collector.stop()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
