import argparse

from sessionmeter.config import Config
from sessionmeter.logging import LOG_FORMATS


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="sessionmeter",
        description="Incremental usage and cost aggregator for Claude session logs",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9186",
        help="Address to serve metrics on (default: :9186)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default=None,
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default="console",
        choices=list(LOG_FORMATS),
        help="Log output format (default: console)",
    )
    parser.add_argument(
        "--projects.dir",
        dest="projects_dir",
        default=None,
        help="Directory holding one subdirectory per project "
        "(default: ~/.claude/projects)",
    )
    parser.add_argument(
        "--workers.max",
        dest="max_workers",
        type=int,
        default=None,
        help="Maximum parse worker processes, 0 parses in-process (default: 4)",
    )
    parser.add_argument(
        "--no-watch",
        dest="watch",
        action="store_false",
        help="Disable file watching and rely on periodic refreshes",
    )
    parser.add_argument(
        "--config.file",
        dest="config_file",
        default=None,
        help="JSON config file (default: ~/.claude/.sessionmeter.json)",
    )

    args = parser.parse_args(argv)
    config = Config.from_env(config_file=args.config_file)
    config.listen_address = args.listen_address
    config.log_format = args.log_format
    config.watch = args.watch
    if args.log_level is not None:
        config.log_level = args.log_level
    if args.projects_dir is not None:
        config.projects_dir = args.projects_dir
    if args.max_workers is not None:
        if args.max_workers < 0:
            parser.error("--workers.max must not be negative")
        config.max_workers = args.max_workers
    return config
