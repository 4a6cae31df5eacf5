"""Command line entrypoint for the Azure collector."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from .config import Config
from .errors import InvalidConfigError
from .exporter import build_exporter, run_from_config


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="azure-collector",
        description="Start a Prometheus endpoint exposing Azure API rate limits and quotas per tenant cluster.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run exactly one scrape, print the metrics to stdout and exit.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Override the metrics HTTP port (default from METRICS_PORT env).",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Override the metrics HTTP host (default from METRICS_HOST env).",
    )
    parser.add_argument(
        "--location",
        type=str,
        default=None,
        help="Azure location of the host and tenant clusters (default from AZURE_LOCATION env).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Override the per-scrape deadline in seconds.",
    )
    parser.add_argument(
        "--kubeconfig",
        type=str,
        default=None,
        help="Path to a kubeconfig file. When empty the in-cluster config is used.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Set an explicit log level (default from LOG_LEVEL env).",
    )
    return parser


def _configure_logging(level: str) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # The Azure SDK logs every HTTP request at INFO.
    logging.getLogger("azure").setLevel(max(numeric_level, logging.WARNING))


def main(argv: Optional[list[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    config = Config.from_env()

    if args.port is not None:
        config.metrics_port = args.port
    if args.host is not None:
        config.metrics_host = args.host
    if args.location is not None:
        config.location = args.location
    if args.timeout is not None:
        config.scrape_timeout_seconds = args.timeout
    if args.kubeconfig is not None:
        config.kubeconfig_path = args.kubeconfig

    log_level = args.log_level or config.log_level
    _configure_logging(log_level)

    try:
        if args.once:
            sys.stdout.write(build_exporter(config).render().decode("utf-8"))
            return
        run_from_config(config)
    except InvalidConfigError as exc:
        logging.getLogger(__name__).error("Invalid configuration: %s", exc)
        sys.exit(2)
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Received interrupt, shutting down.")


if __name__ == "__main__":  # pragma: no cover - module entrypoint
    main()
