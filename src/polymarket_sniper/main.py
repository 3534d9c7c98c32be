import argparse
import asyncio
import sys

from rich import print

from polymarket_sniper.config import ConfigError, build_config, check_credentials, load_config
from polymarket_sniper.events import EventLog
from polymarket_sniper.loop import run_forever


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="polymarket-sniper")
    parser.add_argument("--config", default="config/default.yaml")
    parser.add_argument("--once", action="store_true", help="trade a single window then exit")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", dest="dry_run", action="store_true", default=None)
    mode.add_argument("--live", dest="dry_run", action="store_false")
    return parser.parse_args(argv)


def setup(args):
    try:
        raw = load_config(args.config)
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {e}") from e
    cfg = build_config(raw)
    if args.dry_run is not None:
        cfg.live.dry_run = args.dry_run
    check_credentials(cfg)
    return cfg


def main(argv=None):
    args = parse_args(argv)
    try:
        cfg = setup(args)
    except ConfigError as e:
        print(f"[red]Config error:[/red] {e}")
        sys.exit(1)

    log = EventLog(cfg.storage.events_path, buffer_size=cfg.app.log_buffer)
    try:
        asyncio.run(run_forever(cfg, log, max_windows=1 if args.once else None))
    except KeyboardInterrupt:
        print("[yellow]Interrupted[/yellow]")


if __name__ == "__main__":
    main()
