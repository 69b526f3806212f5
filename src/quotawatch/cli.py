import argparse

from quotawatch.config import Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="quotawatch",
        description="Fused usage and quota snapshots for metered AI accounts",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9186",
        help="Address to listen on (default: :9186)",
    )
    parser.add_argument(
        "--fetch.interval",
        dest="interval",
        type=int,
        default=None,
        help="Seconds between fetch cycles (default: 60)",
    )
    parser.add_argument(
        "--fetch.timeout",
        dest="fetch_timeout",
        type=float,
        default=None,
        help="Deadline in seconds for one account fetch (default: 10)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.json",
        dest="log_json",
        action="store_true",
        help="Emit JSON log lines",
    )

    args = parser.parse_args(argv)
    config = Config.from_env()
    config.listen_address = args.listen_address
    # flags override environment, which overrides defaults
    if args.interval is not None:
        config.interval = args.interval
    if args.fetch_timeout is not None:
        config.fetch_timeout = args.fetch_timeout
    config.log_level = args.log_level
    config.log_json = args.log_json
    return config
