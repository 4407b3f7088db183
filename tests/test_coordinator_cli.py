import io
import json
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest import mock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import coordinator_cli
from eventstore.config import CoordinatorConfig
from eventstore.coordinator import Coordinator
from eventstore.errors import (
    DaemonUnreachable,
    InvalidRange,
    NodeNotRegistered,
    RangeGap,
    TopologyInconsistency,
)
from eventstore.mesh.gateway import ALLOWED_KEYS_FIELD
from eventstore.model import EventRecord
from eventstore.storage.sqlite_partition import SQLitePartition

CUT = 1700000000
KEY = "ab" * 32


class ExitCodeTest(unittest.TestCase):
    def test_mapping(self):
        self.assertEqual(coordinator_cli.exit_code(InvalidRange("x")), 2)
        self.assertEqual(coordinator_cli.exit_code(RangeGap("x")), 4)
        self.assertEqual(coordinator_cli.exit_code(NodeNotRegistered("x")), 5)
        self.assertEqual(coordinator_cli.exit_code(DaemonUnreachable("x")), 7)
        self.assertEqual(coordinator_cli.exit_code(TopologyInconsistency(None)), 8)
        self.assertEqual(coordinator_cli.exit_code(RuntimeError("x")), 1)


class CoordinatorCliTest(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        base = self.tmpdir.name
        ygg = os.path.join(base, "yggdrasil.conf")
        with open(ygg, "w") as fp:
            json.dump({ALLOWED_KEYS_FIELD: []}, fp)
        config = CoordinatorConfig(
            data_dir=os.path.join(base, "data"),
            ygg_config=ygg,
            reload_command=["true"],
            ctl_command=["echo", json.dumps({"address": "200::9", "key": "ef" * 32})],
        )
        self.coordinator = Coordinator.from_config(
            config,
            partition_factory=lambda node: SQLitePartition(
                os.path.join(base, f"{node.name}.db"), name=node.name
            ),
        )

    def tearDown(self):
        self.coordinator.close()
        self.tmpdir.cleanup()

    def run_cli(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = coordinator_cli.main(list(argv), coordinator=self.coordinator)
        return code, out.getvalue(), err.getvalue()

    def add_archive(self):
        return self.run_cli("add-node", "200::1", "archive1", "pw", "MINVALUE", str(CUT), "--pubkey", KEY)

    def test_add_node_and_duplicate(self):
        code, out, _ = self.add_archive()
        self.assertEqual(code, 0)
        self.assertIn(f"[{CUT}, MAXVALUE)", out)
        code, _, err = self.run_cli("add-node", "200::2", "archive1", "pw", "MINVALUE", str(CUT))
        self.assertEqual(code, 3)
        self.assertIn("ERROR", err)

    def test_overlap_and_bad_range(self):
        self.add_archive()
        code, _, _ = self.run_cli("add-node", "200::2", "archive2", "pw", str(CUT - 5), str(CUT + 5))
        self.assertEqual(code, 4)
        code, _, _ = self.run_cli("add-node", "200::2", "archive2", "pw", "soon", "later")
        self.assertEqual(code, 2)

    def test_remove_unknown_node(self):
        code, _, _ = self.run_cli("remove-node", "ghost")
        self.assertEqual(code, 5)

    def test_remove_node_warns_about_gap(self):
        self.add_archive()
        code, out, _ = self.run_cli("remove-node", "archive1")
        self.assertEqual(code, 0)
        self.assertIn("WARNING", out)
        code, _, _ = self.run_cli("check", "--no-probe")
        self.assertEqual(code, 8)

    def test_archive_flow(self):
        for n, ts in enumerate([100, 200], start=1):
            self.coordinator.store.insert(
                EventRecord(id=f"{n:064x}", pubkey="a" * 64, kind=1, created_at=ts)
            )
        self.add_archive()

        code, out, _ = self.run_cli("archive", "--node", "archive1", "--cutoff", str(CUT), "--dry-run")
        self.assertEqual(code, 0)
        self.assertIn("Events to move : 2", out)

        with mock.patch("builtins.input", return_value="n"):
            code, out, _ = self.run_cli("archive", "--node", "archive1", "--cutoff", str(CUT))
        self.assertIn("Aborted", out)
        self.assertEqual(self.coordinator.store.hot.count(None, CUT), 2)

        code, out, _ = self.run_cli("archive", "--node", "archive1", "--cutoff", str(CUT), "--yes")
        self.assertEqual(code, 0)
        self.assertIn("narrow-hot", out)
        self.assertEqual(self.coordinator.store.hot.count(None, CUT), 0)

        code, _, _ = self.run_cli("archive", "--node", "archive1", "--cutoff", str(CUT), "--yes")
        self.assertEqual(code, 6)
        code, _, _ = self.run_cli("archive", "--node", "hot", "--cutoff", str(CUT), "--yes")
        self.assertEqual(code, 5)

    def test_query_sql_and_invalid(self):
        self.coordinator.store.insert(
            EventRecord(id="1" * 64, pubkey="a" * 64, kind=7, created_at=CUT + 1)
        )
        code, out, _ = self.run_cli("query", "--sql", "SELECT * FROM events WHERE kind = 7")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out.splitlines()[0])["kind"], 7)
        code, _, err = self.run_cli("query", "--sql", "DROP TABLE events")
        self.assertEqual(code, 2)

    def test_query_filter_must_be_object(self):
        for raw in ("[1]", "\"kinds\"", "{\"kinds\": 5}", "{not json"):
            code, _, err = self.run_cli("query", "--filter", raw)
            self.assertEqual(code, 2, raw)
            self.assertIn("ERROR", err)
        code, _, _ = self.run_cli("query", "--filter", "{\"kinds\": [7]}")
        self.assertEqual(code, 0)

    def test_self_and_check(self):
        code, out, _ = self.run_cli("self")
        self.assertEqual(code, 0)
        self.assertIn("200::9", out)
        self.add_archive()
        code, out, _ = self.run_cli("check")
        self.assertEqual(code, 0)
        self.assertTrue(json.loads(out)["ok"])


if __name__ == "__main__":
    unittest.main()
