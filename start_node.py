"""Simple CLI for running a single storage node.

Usage:
    python start_node.py [--name N] [--host H] [--port P] [--data-dir PATH] \
        [--user U] [--password PW] [--no-identity]

Values default to environment variables NODE_NAME, STORAGE_HOST,
STORAGE_PORT, DATA_DIR, DB_USER, DB_PASSWORD and YGGDRASILCTL when set.
"""

import argparse
import logging
import os
from typing import List

from eventstore.config import DEFAULT_STORAGE_PORT
from eventstore.errors import DaemonUnreachable
from eventstore.mesh.gateway import DaemonControl
from eventstore.storage.replica.grpc_server import run_storage_node
from eventstore.storage.sqlite_partition import SQLitePartition
from eventstore.utils.event_logger import EventLogger


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    env = os.environ
    parser = argparse.ArgumentParser(description="Start a single storage node")
    parser.add_argument("--name", default=env.get("NODE_NAME", "storage"))
    parser.add_argument("--host", default=env.get("STORAGE_HOST", "[::]"))
    parser.add_argument(
        "--port", type=int, default=int(env.get("STORAGE_PORT", DEFAULT_STORAGE_PORT))
    )
    parser.add_argument("--data-dir", default=env.get("DATA_DIR", "."))
    parser.add_argument("--user", default=env.get("DB_USER", "nostr_ts_relay"))
    parser.add_argument("--password", default=env.get("DB_PASSWORD"))
    parser.add_argument(
        "--no-identity",
        dest="identity",
        action="store_false",
        help="do not query the mesh daemon for this node's address and key",
    )
    return parser.parse_args(argv)


def identity_banner(address: str, public_key: str, name: str) -> str:
    """Text telling the node operator what to hand to the coordinator."""
    return "\n".join(
        [
            "=" * 60,
            " Storage node",
            f" Address   : {address}",
            f" Public key: {public_key}",
            "",
            " Share the address and public key with the coordinator operator",
            " so they can register this node:",
            "",
            f"   coordinator add-node {address} {name} <password> <from-ts> <to-ts> \\",
            f"     --pubkey {public_key}",
            "=" * 60,
        ]
    )


def main(argv: List[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    if not args.password:
        logging.warning("no password configured; the storage node accepts any caller")
    if args.identity:
        ctl = os.environ.get("YGGDRASILCTL", "yggdrasilctl")
        try:
            info = DaemonControl([], [ctl, "-json", "getself"], timeout=10).get_self()
            print(identity_banner(info.get("address", "unknown"), info.get("key", "unknown"), args.name))
        except DaemonUnreachable as exc:
            logging.warning("mesh identity unavailable: %s", exc)
    os.makedirs(args.data_dir, exist_ok=True)
    event_logger = EventLogger(os.path.join(args.data_dir, "event_log.txt"))
    partition = SQLitePartition(os.path.join(args.data_dir, f"{args.name}.db"), name=args.name)
    run_storage_node(
        partition,
        args.host,
        args.port,
        user=args.user,
        password=args.password,
        event_logger=event_logger,
    )


if __name__ == "__main__":
    main()
