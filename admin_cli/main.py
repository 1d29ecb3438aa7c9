"""Admin command for tablet volume maintenance."""
# Example:
# python -m admin_cli.main randomize-volumes -t mytable -z /var/lib/cluster -i prod

from __future__ import annotations

import asyncio
import json
import signal
import sys
from argparse import (
    ArgumentDefaultsHelpFormatter,
    ArgumentParser,
    RawDescriptionHelpFormatter,
)

from tablet_shared.errors import VolumeError
from tablet_volumes import assigner, config, onboarding, volumes
from tablet_volumes.logging_config import configure_logging, log
from tablet_volumes.randomize import RandomizeVolumesOperation


# Combine both formatters to allow newlines and showing default arguments
class RawDescriptionDefaultsHelpFormatter(
    RawDescriptionHelpFormatter,
    ArgumentDefaultsHelpFormatter,
):
    pass


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        description="Tablet volume administration.\n\n"
        + "randomize-volumes spreads tablet directories over the configured volumes;\n"
        + "add-volumes appends new volumes to the configuration (cluster offline).",
        formatter_class=RawDescriptionDefaultsHelpFormatter,
    )
    parser.add_argument("-c", "--config", default=config.DEFAULT_CONFIG_PATH, help="Cluster config file")
    parser.add_argument("--log-level", default=None, help="Log level (defaults to $LOG_LEVEL or INFO)")
    sub = parser.add_subparsers(dest="command")

    rand = sub.add_parser(
        "randomize-volumes",
        help="Reassign tablet directories across volumes",
        formatter_class=RawDescriptionDefaultsHelpFormatter,
    )
    rand.add_argument("-t", "--table", default=None, help="Table name or id; all tables when omitted")
    rand.add_argument("-z", "--coordinator", default=None, help="Coordination endpoint holding instance state")
    rand.add_argument("-i", "--instance", default=None, help="Instance name")
    rand.add_argument("--seed", type=int, default=None, help="Seed for reproducible assignments")
    rand.add_argument("--workers", type=int, default=None, help="Concurrent tablet workers")

    add = sub.add_parser(
        "add-volumes",
        help="Add volumes to the cluster configuration",
        formatter_class=RawDescriptionDefaultsHelpFormatter,
    )
    add.add_argument("roots", nargs="+", help="Volume roots to add (file:// or s3:// URIs)")
    add.add_argument("--instance-id", default=None, help="Instance id to stamp on new volumes")
    return parser


def _apply_overrides(cfg: dict, args) -> dict:
    instance = cfg.setdefault("instance", {})
    if getattr(args, "coordinator", None):
        instance["coordinator"] = args.coordinator
    if getattr(args, "instance", None):
        instance["name"] = args.instance
    if getattr(args, "workers", None):
        cfg.setdefault("rebalance", {})["workers"] = args.workers
    return cfg


async def _randomize(cfg: dict, table: str | None, seed: int | None) -> int:
    settings = config.rebalance_settings(cfg)
    store = config.open_store(cfg)
    volume_set = config.instance_volumes(cfg)
    cancel_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            # Signal handlers are unavailable off the main thread and on Windows.
            pass

    operation = RandomizeVolumesOperation(
        store,
        volume_set,
        table=table,
        rng=assigner.make_random_source(settings["strategy"], seed),
        workers=settings["workers"],
        batch_size=settings["batch_size"],
        write_retries=settings["write_retries"],
        retry_delay=settings["retry_delay"],
        min_volumes=settings["min_volumes"],
        create_directories=settings["create_directories"],
        cancel_event=cancel_event,
    )
    summary = await operation.run()
    print(json.dumps(summary.as_dict(), indent=2))
    return summary.exit_status


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint.

    Args:
        argv: Optional list of arguments (defaults to ``sys.argv``).

    Returns:
        int: Process exit code (0 on full success, non-zero otherwise).
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if not args.command:
        parser.print_help()
        return 1

    try:
        cfg = _apply_overrides(config.set_config(args.config), args)
        volumes.configure(cfg)

        if args.command == "randomize-volumes":
            return asyncio.run(_randomize(cfg, args.table, args.seed))

        if args.command == "add-volumes":
            updated = asyncio.run(
                onboarding.onboard(args.config, args.roots, instance_id=args.instance_id, cfg=cfg)
            )
            print(json.dumps({"volumes": updated.roots}, indent=2))
            return 0
    except VolumeError as exc:
        log.error("%s failed: %s", args.command, exc)
        sys.stderr.write(f"{args.command}: {exc}\n")
        return 1

    parser.print_help()
    return 1


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
