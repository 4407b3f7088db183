import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from eventstore.clustering.partitioned_store import PartitionedStore
from eventstore.clustering.ranges import KeyRange
from eventstore.errors import PartitionUnavailable
from eventstore.model import EventRecord, Filter
from eventstore.storage.replica.client import RemotePartition, grpc_target
from eventstore.storage.replica.grpc_server import StorageService, build_server
from eventstore.storage.sqlite_partition import SQLitePartition

CUT = 1700000000


def make_event(n, created_at, tags=None, content=""):
    return EventRecord(
        id=f"{n:064x}",
        pubkey="b" * 64,
        kind=1,
        created_at=created_at,
        content=content,
        tags=tags or [],
    )


class GrpcTargetTest(unittest.TestCase):
    def test_targets(self):
        self.assertEqual(grpc_target("200:1234::1", 7100), "[200:1234::1]:7100")
        self.assertEqual(grpc_target("[200::1]:9000", 7100), "[200::1]:9000")
        self.assertEqual(grpc_target("[200::1]", 7100), "[200::1]:7100")
        self.assertEqual(grpc_target("node1", 7100), "node1:7100")
        self.assertEqual(grpc_target("node1:9000", 7100), "node1:9000")


class RemotePartitionTest(unittest.TestCase):
    def setUp(self):
        self.backing = SQLitePartition(":memory:", name="archive1")
        service = StorageService(self.backing, user="relay", password="secret")
        self.server, port = build_server(service, "localhost", 0)
        self.server.start()
        self.target = f"localhost:{port}"
        self.remote = RemotePartition(
            "archive1", self.target, user="relay", password="secret", timeout=5, fetch_size=2
        )

    def tearDown(self):
        self.remote.close()
        self.server.stop(0)
        self.backing.close()

    def test_insert_and_select(self):
        self.assertTrue(self.remote.insert(make_event(1, 100, tags=[["t", "x"]])).inserted)
        self.assertFalse(self.remote.insert(make_event(1, 100)).inserted)
        self.assertEqual(self.remote.insert_many([make_event(n, 100 + n) for n in range(2, 7)]), 5)
        rows = self.remote.select(Filter(since=104))
        self.assertEqual([e.created_at for e in rows], [106, 105, 104])
        rows = self.remote.select(Filter(), ids={make_event(1, 100).id})
        self.assertEqual(rows[0].tags, [["t", "x"]])
        self.assertEqual(self.backing.count(), 6)

    def test_fetch_count_bounds_delete(self):
        self.remote.insert_many([make_event(n, 10 * n) for n in range(1, 6)])
        rows = self.remote.fetch(None, 50, None, 3)
        self.assertEqual([e.created_at for e in rows], [10, 20, 30])
        rows = self.remote.fetch(None, 50, (rows[-1].created_at, rows[-1].id), 10)
        self.assertEqual([e.created_at for e in rows], [40])
        self.assertEqual(self.remote.count(None, 30), 2)
        self.assertEqual(self.remote.bounds(), (10, 50))
        self.assertEqual(self.remote.delete_range(None, 30), 2)
        self.assertEqual(self.remote.delete(make_event(5, 50).id).created_at, 50)
        self.assertIsNone(self.remote.delete(make_event(5, 50).id))
        self.assertEqual(self.backing.count(), 2)

    def test_large_results_are_paged(self):
        events = [make_event(n, 1000 + n, content="x" * 2048) for n in range(3000)]
        bulk = RemotePartition(
            "archive1", self.target, user="relay", password="secret", timeout=10
        )
        store = PartitionedStore(SQLitePartition(":memory:"))
        try:
            self.assertEqual(bulk.insert_many(events), 3000)
            store.attach_partition("archive1", KeyRange(None, CUT), bulk)
            result = store.query(Filter(until=999999))
            self.assertEqual(result.failed, {})
            self.assertEqual(len(result.events), 3000)
            self.assertEqual(result.events[0].created_at, 3999)
            self.assertEqual(len(bulk.fetch(None, None, None, 3000)), 3000)
        finally:
            store.close()

    def test_select_pages_respect_limit(self):
        self.remote.insert_many([make_event(n, 10 * n) for n in range(1, 8)])
        rows = self.remote.select(Filter(limit=3))
        self.assertEqual([e.created_at for e in rows], [70, 60, 50])
        rows = self.remote.select(Filter(), page=2, after=(50, make_event(5, 50).id))
        self.assertEqual([e.created_at for e in rows], [40, 30])
        self.assertEqual(len(self.remote.select(Filter())), 7)

    def test_ping(self):
        self.assertTrue(self.remote.ping())
        self.server.stop(0)
        self.remote.timeout = 0.5
        self.assertFalse(self.remote.ping())

    def test_wrong_password_rejected(self):
        intruder = RemotePartition("archive1", self.target, user="relay", password="nope", timeout=5)
        try:
            with self.assertRaises(PartitionUnavailable):
                intruder.count()
        finally:
            intruder.close()

    def test_stopped_server_is_unavailable(self):
        self.server.stop(0)
        self.remote.timeout = 0.5
        with self.assertRaises(PartitionUnavailable):
            self.remote.select(Filter())


if __name__ == "__main__":
    unittest.main()
