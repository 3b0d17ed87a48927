import argparse

from tokenwatch.config import Config
from tokenwatch.errors import ConfigurationError

# periods offered on the command line
CLI_PERIODS = ("7d", "30d", "90d")


def _add_report_flags(parser: "argparse.ArgumentParser") -> "None":
    parser.add_argument(
        "-p",
        "--period",
        dest="period",
        default="7d",
        help="Time period: 7d, 30d or 90d (default: 7d)",
    )
    parser.add_argument(
        "-w",
        "--watch",
        dest="watch",
        action="store_true",
        help="Watch mode - refresh periodically",
    )


def build_parser() -> "argparse.ArgumentParser":
    parser = argparse.ArgumentParser(
        prog="tokenwatch",
        description="Track OpenAI token consumption and pricing",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default=None,
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--verbose",
        dest="verbose",
        action="store_true",
        help="Log raw API requests and responses",
    )
    parser.add_argument(
        "--watch.interval",
        dest="watch_interval",
        type=int,
        default=None,
        help="Watch mode refresh interval in seconds (default: 30)",
    )
    bypass = parser.add_mutually_exclusive_group()
    bypass.add_argument(
        "--watch.bypass-cache",
        dest="watch_bypass_cache",
        action="store_true",
        default=None,
        help="Watch mode fetches skip the response cache (default)",
    )
    bypass.add_argument(
        "--watch.use-cache",
        dest="watch_bypass_cache",
        action="store_false",
        help="Watch mode fetches may be served from the response cache",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default="",
        help="Expose Prometheus metrics on this address, e.g. :9185",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    _add_report_flags(
        subparsers.add_parser("openai", help="Show OpenAI token consumption and costs")
    )
    _add_report_flags(
        subparsers.add_parser(
            "all", help="Show combined consumption and costs from all platforms"
        )
    )
    config_parser = subparsers.add_parser(
        "config", help="Show the effective configuration"
    )
    config_actions = config_parser.add_subparsers(dest="config_action")
    config_actions.add_parser(
        "check", help="Verify that the API keys are configured and accepted"
    )
    subparsers.add_parser("version", help="Print the tokenwatch version")
    return parser


def parse_args(argv: "list[str] | None" = None) -> "tuple[str, Config]":
    """
    parses the command line on top of the environment configuration.
    Returns the command name and the resulting config; `config check`
    is returned as a command of its own.
    """
    args = build_parser().parse_args(argv)
    config = Config.from_env()

    if args.log_level is not None:
        config.log_level = args.log_level
    if args.verbose:
        config.debug = True
    if args.watch_interval is not None:
        config.watch_interval = args.watch_interval
    if args.watch_bypass_cache is not None:
        config.watch_bypass_cache = args.watch_bypass_cache
    config.listen_address = args.listen_address

    if args.command in ("openai", "all"):
        period = args.period or "7d"
        if period not in CLI_PERIODS:
            raise ConfigurationError(
                f"invalid period: {period}. Use {', '.join(CLI_PERIODS)}",
                suggestions=(),
            )
        config.period = period
        config.watch = args.watch

    config.validate()
    if args.command == "config" and args.config_action == "check":
        return "config check", config
    return args.command, config
