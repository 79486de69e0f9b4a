import argparse
from pathlib import Path

from tokentally.config import Config
from tokentally.logging import LOG_FORMATS


def parse_args(argv: "list[str] | None" = None) -> "tuple[Config, bool]":
    """
    builds the Config from environment defaults overlaid with command
    line flags. Returns the config and whether to run a single
    refresh and exit.
    """
    defaults = Config.from_env()
    parser = argparse.ArgumentParser(
        prog="tokentally",
        description="Live token usage and cost statistics from coding assistant session logs",
    )
    parser.add_argument(
        "--projects.dir",
        dest="projects_dir",
        type=Path,
        default=defaults.projects_dir,
        help=f"Session log root (default: {defaults.projects_dir})",
    )
    parser.add_argument(
        "--refresh.interval",
        dest="refresh_interval",
        type=int,
        default=defaults.refresh_interval,
        help="Periodic refresh interval in seconds, 0 disables (default: 10)",
    )
    parser.add_argument(
        "--window.hours",
        dest="window_hours",
        type=float,
        default=defaults.window_hours,
        help="Rolling window length in hours (default: 5)",
    )
    parser.add_argument(
        "--window.token-limit",
        dest="token_limit",
        type=int,
        default=defaults.token_limit,
        help="Estimated token limit of one window (default: 20000000)",
    )
    parser.add_argument(
        "--watch.debounce",
        dest="debounce_seconds",
        type=float,
        default=defaults.debounce_seconds,
        help="Seconds to collapse bursts of file changes (default: 0.5)",
    )
    parser.add_argument(
        "--watch.poll-interval",
        dest="watch_poll_interval",
        type=float,
        default=defaults.watch_poll_interval,
        help="Seconds between directory polls (default: 1.0)",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=defaults.listen_address,
        help="Metrics address to listen on, empty disables (default: :9185)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default=defaults.log_level,
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default=defaults.log_format,
        choices=list(LOG_FORMATS),
        help="Log output format (default: console)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Refresh once, log the summary and exit",
    )

    args = parser.parse_args(argv)
    config = Config(
        projects_dir=args.projects_dir.expanduser(),
        refresh_interval=args.refresh_interval,
        window_hours=args.window_hours,
        token_limit=args.token_limit,
        debounce_seconds=args.debounce_seconds,
        watch_poll_interval=args.watch_poll_interval,
        listen_address=args.listen_address,
        log_level=args.log_level,
        log_format=args.log_format,
    )
    try:
        config.validate()
    except ValueError as e:
        parser.error(str(e))
    return config, args.once
