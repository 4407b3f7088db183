"""Operator CLI for the event store coordinator.

Usage:
    python coordinator_cli.py add-node ADDR NAME PASSWORD FROM TO [--pubkey K] [--user U]
    python coordinator_cli.py remove-node NAME [--reclaim-by N]
    python coordinator_cli.py archive --node N (--cutoff T | --older-than D) \
        [--batch-size S] [--batch-window W] [--dry-run] [--yes]
    python coordinator_cli.py narrow-hot LB
    python coordinator_cli.py check | nodes | self
    python coordinator_cli.py query [--sql SQL | --filter JSON] [--strict]

Settings come from the environment (see ``eventstore.config``);
``--data-dir`` overrides EVENTSTORE_DATA_DIR.

Exit codes: 0 success, 2 invalid input, 3 duplicate name, 4 range overlap or
gap, 5 unknown node, 6 nothing to archive, 7 mesh daemon unreachable,
8 topology inconsistency, 1 any other error.
"""

import argparse
import json
import logging
import sys
from typing import List

from eventstore.archive.mover import ArchivePlan, ArchiveProgress, ArchiveState, cutoff_from_days
from eventstore.clustering.ranges import KeyRange
from eventstore.clustering.registry import Credentials
from eventstore.config import DEFAULT_BATCH_SIZE, DEFAULT_BATCH_WINDOW, CoordinatorConfig
from eventstore.coordinator import Coordinator
from eventstore.errors import (
    DaemonUnreachable,
    DuplicateName,
    EventStoreError,
    NodeNotRegistered,
    NothingToArchive,
    NotFound,
    RangeGap,
    RangeOverlap,
    TopologyInconsistency,
    ValidationError,
)
from eventstore.model import Filter
from eventstore.sql.parser import parse_filter

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INVALID = 2
EXIT_DUPLICATE = 3
EXIT_PLACEMENT = 4
EXIT_NOT_FOUND = 5
EXIT_NOTHING_TO_ARCHIVE = 6
EXIT_DAEMON = 7
EXIT_INCONSISTENT = 8

_EXIT_CODES = [
    (TopologyInconsistency, EXIT_INCONSISTENT),
    (DuplicateName, EXIT_DUPLICATE),
    ((RangeOverlap, RangeGap), EXIT_PLACEMENT),
    (ValidationError, EXIT_INVALID),
    ((NotFound, NodeNotRegistered), EXIT_NOT_FOUND),
    (NothingToArchive, EXIT_NOTHING_TO_ARCHIVE),
    (DaemonUnreachable, EXIT_DAEMON),
]


def exit_code(exc: BaseException) -> int:
    for types, code in _EXIT_CODES:
        if isinstance(exc, types):
            return code
    return EXIT_ERROR


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage the tiered event store")
    parser.add_argument("--data-dir", default=None)
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("add-node", help="register a storage node for a key range")
    p.add_argument("address")
    p.add_argument("name")
    p.add_argument("password")
    p.add_argument("range_from", metavar="FROM")
    p.add_argument("range_to", metavar="TO")
    p.add_argument("--pubkey", default=None)
    p.add_argument("--user", default=None)

    p = sub.add_parser("remove-node", help="deregister a storage node")
    p.add_argument("name")
    p.add_argument("--reclaim-by", default=None)

    p = sub.add_parser("archive", help="move aged hot rows to a storage node")
    p.add_argument("--node", required=True)
    when = p.add_mutually_exclusive_group(required=True)
    when.add_argument("--cutoff", type=int)
    when.add_argument("--older-than", type=float, metavar="DAYS")
    p.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE)
    p.add_argument("--batch-window", type=int, default=DEFAULT_BATCH_WINDOW)
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--yes", action="store_true", help="do not ask for confirmation")

    p = sub.add_parser("narrow-hot", help="raise the hot tier's lower bound")
    p.add_argument("lower_bound", type=int)

    p = sub.add_parser("check", help="reconcile registry, router and allow-list")
    p.add_argument("--no-probe", dest="probe", action="store_false")

    sub.add_parser("nodes", help="list registered nodes")
    sub.add_parser("self", help="print this coordinator's mesh identity")

    p = sub.add_parser("query", help="query events across all partitions")
    p.add_argument("--sql", default=None)
    p.add_argument("--filter", default=None, help="filter as JSON")
    p.add_argument("--strict", action="store_true")
    return parser.parse_args(argv)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


def _print_plan(plan: ArchivePlan, args) -> None:
    low, high = plan.estimated_duration
    print("Archive plan:")
    print(f"  Target node    : {plan.node}")
    print(f"  Cutoff         : {plan.cutoff}")
    print(f"  Events to move : {plan.total_rows}")
    print(f"  Time range     : {plan.min_key} -> {plan.max_key}")
    print(f"  Batch window   : {args.batch_window}s per window")
    print(f"  Batch size     : {args.batch_size} rows per batch")
    print(f"  Estimated time : {low / 60:.0f}-{high / 60:.0f} minutes")


def _print_progress(event: ArchiveProgress) -> None:
    eta = f"{event.eta:.0f}s" if event.eta is not None else "?"
    sys.stdout.write(
        f"\r  Copied: {event.rows_copied} / {event.total_rows}  |  "
        f"Deleted: {event.rows_deleted}  |  {event.rate:.0f} rows/s  |  ETA: {eta}      "
    )
    sys.stdout.flush()


def _confirm(plan: ArchivePlan) -> bool:
    try:
        answer = input("Proceed? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() == "y"


def cmd_add_node(coordinator: Coordinator, args) -> int:
    rng = KeyRange.parse(args.range_from, args.range_to)
    creds = Credentials(args.user or coordinator.config.db_user, args.password)
    if not args.pubkey:
        print("WARNING: no --pubkey given; the node can only peer while the allow-list is open")
    node = coordinator.topology.add_node(args.name, args.address, creds, rng, args.pubkey)
    print(f"Registered {node.name} at {node.address} for {node.range}")
    print(f"Hot tier now owns {coordinator.registry.hot().range}")
    return EXIT_OK


def cmd_remove_node(coordinator: Coordinator, args) -> int:
    result = coordinator.topology.remove_node(args.name, reclaim_by=args.reclaim_by)
    print(f"Removed {result.node.name} {result.range}; data on the node was not deleted")
    if result.reclaimed_by:
        print(f"{result.reclaimed_by} now owns {coordinator.registry.lookup(result.reclaimed_by).range}")
    for warning in result.warnings:
        print(f"WARNING: {warning}")
    return EXIT_OK


def cmd_archive(coordinator: Coordinator, args) -> int:
    archiver = coordinator.archiver
    try:
        cutoff = args.cutoff
        if cutoff is None:
            cutoff = cutoff_from_days(args.older_than)
        plan = archiver.plan(args.node, cutoff)
    except NothingToArchive as exc:
        print(f"{exc}. Nothing to do.")
        return EXIT_NOTHING_TO_ARCHIVE
    _print_plan(plan, args)
    if args.dry_run:
        print("Dry run: no changes made.")
        return EXIT_OK
    report = archiver.run(
        args.node,
        cutoff,
        batch_window=args.batch_window,
        batch_size=args.batch_size,
        confirm=None if args.yes else _confirm,
        progress=_print_progress,
    )
    if report.state is ArchiveState.ABORTED:
        print("Aborted.")
        return EXIT_OK
    print()
    print("Done.")
    print(f"  Rows copied to remote : {report.rows_copied} ({report.rows_skipped} already there)")
    print(f"  Rows deleted locally  : {report.rows_deleted}")
    print(f"  Elapsed               : {report.elapsed:.1f}s")
    for warning in report.warnings:
        print(f"WARNING: {warning}")
    print("Consider narrowing the hot tier's lower bound (narrow-hot) to exclude the archived range.")
    return EXIT_OK


def cmd_narrow_hot(coordinator: Coordinator, args) -> int:
    report = coordinator.topology.narrow_hot(args.lower_bound)
    print(f"Hot tier now owns {coordinator.registry.hot().range}")
    if report.extended:
        print(f"{report.extended} now owns {coordinator.registry.lookup(report.extended).range}")
    print(f"Moved {report.rows_copied} rows ({report.rows_deleted} deleted from the hot tier)")
    return EXIT_OK


def cmd_check(coordinator: Coordinator, args) -> int:
    report = coordinator.topology.check(probe=args.probe)
    _print_json(report.to_dict())
    return EXIT_OK if report.ok else EXIT_INCONSISTENT


def cmd_nodes(coordinator: Coordinator, args) -> int:
    for node in coordinator.registry.all():
        key = node.public_key or "-"
        print(f"{node.name:<20} {node.address:<40} {str(node.range):<30} {key}")
    return EXIT_OK


def cmd_self(coordinator: Coordinator, args) -> int:
    ident = coordinator.mesh.self_identity()
    print(f"Address   : {ident.address}")
    print(f"Public key: {ident.public_key}")
    return EXIT_OK


def cmd_query(coordinator: Coordinator, args) -> int:
    try:
        if args.sql:
            flt = parse_filter(args.sql)
        else:
            flt = Filter.from_dict(json.loads(args.filter) if args.filter else {})
    except (ValueError, TypeError, AttributeError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_INVALID
    result = coordinator.store.query(flt, strict=args.strict)
    for event in result.events:
        print(json.dumps(event.to_dict()))
    if result.failed:
        for name, error in result.failed.items():
            print(f"WARNING: partition {name} skipped: {error}", file=sys.stderr)
    return EXIT_OK


COMMANDS = {
    "add-node": cmd_add_node,
    "remove-node": cmd_remove_node,
    "archive": cmd_archive,
    "narrow-hot": cmd_narrow_hot,
    "check": cmd_check,
    "nodes": cmd_nodes,
    "self": cmd_self,
    "query": cmd_query,
}


def main(argv: List[str] | None = None, *, coordinator: Coordinator | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    owned = coordinator is None
    try:
        if owned:
            config = CoordinatorConfig.from_env(data_dir=args.data_dir)
            coordinator = Coordinator.from_config(config)
        return COMMANDS[args.command](coordinator, args)
    except EventStoreError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return exit_code(exc)
    finally:
        if owned and coordinator is not None:
            coordinator.close()


def main_entry() -> None:
    sys.exit(main())


if __name__ == "__main__":
    main_entry()
