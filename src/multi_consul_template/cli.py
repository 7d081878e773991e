"""Command-line parsing."""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from pathlib import Path

from . import __version__
from .config import (
    Config,
    ConfigError,
    env_defaults,
    load_log_debug,
    parse_endpoint,
    parse_log_level,
    parse_pair,
)

__all__ = ["build_parser", "parse_args"]


def build_parser() -> argparse.ArgumentParser:
    defaults = env_defaults()
    parser = argparse.ArgumentParser(
        prog="multi-consul-template",
        description=(
            "Mirror Consul KV prefixes into template directories and keep "
            "consul-template's configuration and process in sync."
        ),
    )
    parser.add_argument(
        "-c",
        "--config",
        required=True,
        metavar="PATH",
        help="Path to consul-template config",
    )
    parser.add_argument(
        "-b",
        "--bin",
        default=defaults["bin"],
        metavar="BIN",
        help="consul-template binary (default: %(default)s)",
    )
    parser.add_argument(
        "--consul-endpoint",
        default=defaults["consul_endpoint"],
        metavar="ENDPOINT",
        help="unix://PATH or tcp://HOST:PORT (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        default=defaults["log_level"],
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "pairs",
        nargs="+",
        metavar="PAIR",
        help=(
            "List of pairs in format of FROM:TO where FROM is prefix in consul "
            "and TO is directory in filesystem"
        ),
    )
    return parser


def parse_args(argv: Sequence[str] | None = None) -> Config:
    """Parse the command line into a ``Config``.

    Raises:
        ConfigError: If an option value is invalid
        SystemExit: On argparse usage errors or --help/--version
    """
    args = build_parser().parse_args(argv)
    log_debug, log_file = load_log_debug()
    config = Config(
        config_path=Path(args.config),
        consul_bin=args.bin,
        consul_endpoint=parse_endpoint(args.consul_endpoint),
        watched_pairs=[parse_pair(value) for value in args.pairs],
        log_level=parse_log_level(args.log_level),
        log_debug=log_debug,
        log_file=log_file,
    )
    if config.config_path.exists() and not config.config_path.is_file():
        raise ConfigError(f"Config path is not a file: {config.config_path}")
    return config
