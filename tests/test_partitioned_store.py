import os
import sys
import tempfile
import threading
import time
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from eventstore.clustering.partitioned_store import PartitionedStore
from eventstore.clustering.ranges import KeyRange
from eventstore.clustering.registry import Node, NodeRegistry
from eventstore.clustering.tag_index import TagIndex
from eventstore.errors import (
    DuplicateName,
    NoPartition,
    PartitionUnavailable,
    ProtectedNode,
    RangeGap,
    RangeOverlap,
    RegistryUnavailable,
)
from eventstore.model import EventRecord, Filter
from eventstore.storage.sqlite_partition import SQLitePartition

CUT = 1700000000


def make_event(n, created_at, kind=1, tags=None):
    return EventRecord(
        id=f"{n:064x}",
        pubkey="a" * 64,
        kind=kind,
        created_at=created_at,
        content=f"event {n}",
        tags=tags or [],
    )


class BrokenPartition(SQLitePartition):
    def select(self, flt, ids=None):
        raise PartitionUnavailable(self.name, ConnectionError("connection refused"))


class SlowPartition(SQLitePartition):
    def select(self, flt, ids=None):
        time.sleep(1.0)
        return super().select(flt, ids)


class GatedPartition(SQLitePartition):
    """Blocks the next insert until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def insert(self, event):
        if self.gate:
            self.gate = False
            self.entered.set()
            self.release.wait(5)
        return super().insert(event)


class PartitionedStoreTest(unittest.TestCase):
    def setUp(self):
        self.hot = SQLitePartition(":memory:", enforce_replaceable=True)
        self.tags = TagIndex()
        self.store = PartitionedStore(self.hot, tag_index=self.tags, query_timeout=0.3)

    def tearDown(self):
        self.store.close()
        self.tags.close()

    def _attach_archive(self, rng=KeyRange(0, CUT), name="archive1", cls=SQLitePartition):
        part = cls(":memory:", name=name)
        self.store.attach_partition(name, rng, part)
        return part

    def test_routing_and_pruned_query(self):
        archive = self._attach_archive()
        self.assertEqual(self.store.range_of("hot"), KeyRange(CUT, None))
        for n, ts in [(1, 100), (2, CUT + 1), (3, CUT - 1)]:
            self.assertTrue(self.store.insert(make_event(n, ts)))

        self.assertEqual(archive.count(), 2)
        self.assertEqual(self.hot.count(), 1)

        result = self.store.query(Filter(since=CUT))
        self.assertEqual(result.visited, ["hot"])
        self.assertEqual([e.created_at for e in result.events], [CUT + 1])

        result = self.store.query(Filter())
        self.assertEqual(sorted(result.visited), ["archive1", "hot"])
        self.assertEqual([e.created_at for e in result.events], [CUT + 1, CUT - 1, 100])
        self.assertFalse(result.partial)

    def test_duplicate_insert_is_noop(self):
        self._attach_archive()
        event = make_event(1, 100)
        self.assertTrue(self.store.insert(event))
        self.assertFalse(self.store.insert(event))

    def test_insert_without_owner(self):
        store = PartitionedStore(SQLitePartition(":memory:"), KeyRange(100, None))
        try:
            with self.assertRaises(NoPartition) as ctx:
                store.insert(make_event(1, 50))
            self.assertEqual(ctx.exception.key, 50)
        finally:
            store.close()

    def test_residue_keeps_hot_visible(self):
        self.store.insert(make_event(1, 50))
        self.store.insert(make_event(2, 150))
        self._attach_archive(KeyRange(0, 1000))
        info = {p.name: p for p in self.store.partitions()}
        self.assertEqual(info["hot"].range, KeyRange(1000, None))
        self.assertEqual(info["hot"].visible, KeyRange(50, None))

        result = self.store.query(Filter(until=100))
        self.assertIn("hot", result.visited)
        self.assertEqual([e.created_at for e in result.events], [50])
        self.assertEqual(self.store.query(Filter(since=1000)).visited, ["hot"])

    def test_results_deduplicated_across_partitions(self):
        event = make_event(1, 50)
        self.store.insert(event)
        archive = self._attach_archive(KeyRange(0, 1000))
        archive.insert_many([event])
        result = self.store.query(Filter())
        self.assertEqual([e.id for e in result.events], [event.id])

    def test_limit_applies_after_merge(self):
        self._attach_archive()
        for n, ts in enumerate([10, 20, CUT + 5, CUT + 6], start=1):
            self.store.insert(make_event(n, ts))
        result = self.store.query(Filter(limit=3))
        self.assertEqual([e.created_at for e in result.events], [CUT + 6, CUT + 5, 20])

    def test_tag_query_uses_index(self):
        self.store.insert(make_event(1, CUT + 1, tags=[["t", "nostr"]]))
        self.store.insert(make_event(2, CUT + 2, tags=[["t", "other"]]))
        result = self.store.query(Filter(tags={"t": ["nostr"]}))
        self.assertEqual([e.created_at for e in result.events], [CUT + 1])

        empty = self.store.query(Filter(tags={"t": ["missing"]}))
        self.assertEqual(empty.events, [])
        self.assertEqual(empty.visited, [])

    def test_tag_index_follows_replacement_and_delete(self):
        old = make_event(1, CUT + 1, kind=0, tags=[["t", "a"]])
        new = make_event(2, CUT + 2, kind=0, tags=[["t", "b"]])
        self.store.insert(old)
        self.store.insert(new)
        self.assertEqual(self.tags.lookup("t", "a"), set())
        self.assertEqual(self.tags.lookup("t", "b"), {new.id})
        self.assertTrue(self.store.delete(new.id))
        self.assertEqual(self.tags.lookup("t", "b"), set())
        self.assertFalse(self.store.delete(new.id))

    def test_failed_partition_gives_partial_result(self):
        self.store.insert(make_event(1, CUT + 1))
        self._attach_archive(name="broken", cls=BrokenPartition)
        result = self.store.query(Filter())
        self.assertTrue(result.partial)
        self.assertIn("broken", result.failed)
        self.assertEqual([e.created_at for e in result.events], [CUT + 1])
        with self.assertRaises(PartitionUnavailable):
            self.store.query(Filter(), strict=True)

    def test_slow_partition_times_out(self):
        self.store.insert(make_event(1, CUT + 1))
        self._attach_archive(name="slow", cls=SlowPartition)
        started = time.monotonic()
        result = self.store.query(Filter())
        self.assertLess(time.monotonic() - started, 0.9)
        self.assertIn("slow", result.failed)
        self.assertEqual(len(result.events), 1)

    def test_attach_rules(self):
        self._attach_archive()
        self.assertIsNone(self.store.attach_partition("archive1", KeyRange(0, CUT), None))
        with self.assertRaises(DuplicateName):
            self.store.attach_partition("archive1", KeyRange(0, 10), None)
        with self.assertRaises(RangeOverlap):
            self.store.attach_partition("other", KeyRange(CUT - 5, CUT + 5), None)
        with self.assertRaises(RangeGap):
            self.store.attach_partition("other", KeyRange(CUT + 10, CUT + 20), None)
        self.assertEqual(self.store.coverage_gaps(), [])

    def test_detach(self):
        self._attach_archive()
        with self.assertRaises(ProtectedNode):
            self.store.detach_partition("hot")
        self.assertEqual(self.store.detach_partition("archive1"), KeyRange(0, CUT))
        self.assertEqual(self.store.coverage_gaps(), [KeyRange(0, CUT)])
        self.assertIsNone(self.store.partition_for(100))
        with self.assertRaises(NoPartition):
            self.store.insert(make_event(1, 100))


class NarrowHotTest(unittest.TestCase):
    def setUp(self):
        self.hot = SQLitePartition(":memory:", enforce_replaceable=True)
        self.store = PartitionedStore(self.hot)
        self.archive = SQLitePartition(":memory:", name="archive1")
        self.store.attach_partition("archive1", KeyRange(None, CUT), self.archive)
        for n, ts in enumerate([CUT + 10, CUT + 20, CUT + 500], start=1):
            self.store.insert(make_event(n, ts))
        self.commits = []

    def tearDown(self):
        self.store.close()

    def test_narrow_moves_rows_below_bound(self):
        report = self.store.narrow_hot(CUT + 100, commit=self.commits.append)
        self.assertEqual(
            self.commits,
            [{"hot": KeyRange(CUT + 100, None), "archive1": KeyRange(None, CUT + 100)}],
        )
        self.assertEqual(report.extended, "archive1")
        self.assertEqual((report.rows_copied, report.rows_inserted, report.rows_deleted), (2, 2, 2))
        self.assertEqual(self.hot.count(), 1)
        self.assertEqual(self.archive.count(), 2)
        self.assertEqual(self.store.query(Filter(since=CUT + 100)).visited, ["hot"])
        self.assertEqual(self.store.coverage_gaps(), [])

    def test_rerun_only_finishes_copy(self):
        self.store.narrow_hot(CUT + 100)
        report = self.store.narrow_hot(CUT + 100)
        self.assertIsNone(report.extended)
        self.assertEqual(report.rows_copied, 0)

    def test_bound_below_hot_start(self):
        with self.assertRaises(RangeOverlap):
            self.store.narrow_hot(CUT - 1)

    def test_failed_commit_leaves_routing(self):
        def commit(changes):
            raise RegistryUnavailable("disk full")

        before = self.store.ranges()
        with self.assertRaises(RegistryUnavailable):
            self.store.narrow_hot(CUT + 100, commit=commit)
        self.assertEqual(self.store.ranges(), before)
        self.assertEqual(self.hot.count(), 3)


class ConcurrentNarrowTest(unittest.TestCase):
    def setUp(self):
        self.hot = GatedPartition(":memory:", enforce_replaceable=True)
        self.store = PartitionedStore(self.hot)
        self.archive = SQLitePartition(":memory:", name="archive1")
        self.store.attach_partition("archive1", KeyRange(None, CUT), self.archive)

    def tearDown(self):
        self.hot.release.set()
        self.store.close()

    def test_insert_in_flight_is_copied_not_lost(self):
        inserted, reports = [], []
        self.hot.gate = True
        writer = threading.Thread(
            target=lambda: inserted.append(self.store.insert(make_event(1, CUT + 50)))
        )
        writer.start()
        self.assertTrue(self.hot.entered.wait(5))

        narrower = threading.Thread(
            target=lambda: reports.append(self.store.narrow_hot(CUT + 100))
        )
        narrower.start()
        narrower.join(0.2)
        self.assertTrue(narrower.is_alive())

        self.hot.release.set()
        writer.join(5)
        narrower.join(5)
        self.assertEqual(inserted, [True])
        self.assertEqual(reports[0].rows_copied, 1)
        self.assertEqual(reports[0].rows_deleted, 1)
        self.assertEqual(self.archive.count(), 1)
        self.assertEqual(self.hot.count(), 0)
        self.assertEqual(self.store.partition_for(CUT + 50), "archive1")


class FromRegistryTest(unittest.TestCase):
    def test_rebuild_routing_from_registry(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            registry = NodeRegistry(os.path.join(tmpdir, "registry.json"))
            node = Node("archive1", "200::1", KeyRange(None, CUT))
            registry.register(node, shrink=registry.hot().with_range(KeyRange(CUT, None)))
            built = []

            def factory(n):
                built.append(n.name)
                return SQLitePartition(":memory:", name=n.name)

            store = PartitionedStore.from_registry(registry, SQLitePartition(":memory:"), factory)
            try:
                self.assertEqual(built, ["archive1"])
                self.assertEqual(store.ranges(), registry.ranges())
                self.assertEqual(store.partition_for(100), "archive1")
            finally:
                store.close()


if __name__ == "__main__":
    unittest.main()
