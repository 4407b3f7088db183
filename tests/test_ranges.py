import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from eventstore.clustering.ranges import (
    FULL_RANGE,
    KeyRange,
    RangeTable,
    coverage_gaps,
    find_overlaps,
    plan_attach,
    plan_narrow,
    plan_reclaim,
)
from eventstore.errors import InvalidRange, RangeGap, RangeOverlap

CUT = 1700000000


class KeyRangeTest(unittest.TestCase):
    def test_parse_minvalue_and_maxvalue(self):
        rng = KeyRange.parse("MINVALUE", "1700000000")
        self.assertIsNone(rng.start)
        self.assertEqual(rng.end, CUT)
        self.assertEqual(KeyRange.parse("5", "maxvalue"), KeyRange(5, None))

    def test_invalid_ranges_rejected(self):
        with self.assertRaises(InvalidRange):
            KeyRange(10, 10)
        with self.assertRaises(InvalidRange):
            KeyRange(10, 5)
        with self.assertRaises(InvalidRange):
            KeyRange.parse("abc", "10")
        with self.assertRaises(InvalidRange):
            KeyRange(None, 0)

    def test_contains_is_half_open(self):
        rng = KeyRange(100, 200)
        self.assertTrue(rng.contains(100))
        self.assertTrue(rng.contains(199))
        self.assertFalse(rng.contains(200))
        self.assertFalse(rng.contains(99))
        self.assertTrue(FULL_RANGE.contains(0))

    def test_minvalue_covers_same_keys_as_zero(self):
        self.assertTrue(KeyRange(None, 10).covers(KeyRange(0, 10)))
        self.assertTrue(KeyRange(0, 10).covers(KeyRange(None, 10)))

    def test_dict_round_trip_uses_sentinels(self):
        data = KeyRange(None, CUT).to_dict()
        self.assertEqual(data, {"from": "MINVALUE", "to": CUT})
        self.assertEqual(KeyRange.from_dict(data), KeyRange(None, CUT))

    def test_intersects_bounds(self):
        hot = KeyRange(CUT, None)
        self.assertTrue(hot.intersects_bounds(None, None))
        self.assertTrue(hot.intersects_bounds(CUT, None))
        self.assertFalse(hot.intersects_bounds(None, CUT))
        self.assertFalse(KeyRange(None, CUT).intersects_bounds(CUT, None))


class CoverageTest(unittest.TestCase):
    def test_full_coverage_has_no_gaps(self):
        self.assertEqual(coverage_gaps([KeyRange(None, CUT), KeyRange(CUT, None)]), [])

    def test_gaps_reported(self):
        gaps = coverage_gaps([KeyRange(100, 200), KeyRange(300, None)])
        self.assertEqual(gaps, [KeyRange(0, 100), KeyRange(200, 300)])
        self.assertEqual(coverage_gaps([KeyRange(None, 50)]), [KeyRange(50, None)])

    def test_find_overlaps(self):
        named = {"a": KeyRange(None, 100), "b": KeyRange(50, 150), "c": KeyRange(150, None)}
        self.assertEqual(find_overlaps(named), [("a", "b")])


class PlanAttachTest(unittest.TestCase):
    def test_carve_lower_edge_of_hot(self):
        shrink = plan_attach({"hot": FULL_RANGE}, "hot", KeyRange(0, CUT))
        self.assertEqual(shrink, ("hot", KeyRange(CUT, None)))

    def test_carve_upper_edge_of_hot(self):
        named = {"archive1": KeyRange(None, CUT), "hot": KeyRange(CUT, None)}
        shrink = plan_attach(named, "hot", KeyRange(1800000000, None))
        self.assertEqual(shrink, ("hot", KeyRange(CUT, 1800000000)))

    def test_overlap_with_storage_node(self):
        named = {"archive1": KeyRange(None, CUT), "hot": KeyRange(CUT, None)}
        with self.assertRaises(RangeOverlap):
            plan_attach(named, "hot", KeyRange(CUT - 100, CUT + 100))

    def test_split_of_hot_range_rejected(self):
        named = {"archive1": KeyRange(None, CUT), "hot": KeyRange(CUT, None)}
        with self.assertRaises(RangeGap):
            plan_attach(named, "hot", KeyRange(1800000000, 1900000000))

    def test_whole_hot_range_cannot_be_taken(self):
        with self.assertRaises(RangeOverlap):
            plan_attach({"hot": KeyRange(100, 200)}, "hot", KeyRange(50, 250))

    def test_new_gap_rejected(self):
        with self.assertRaises(RangeGap):
            plan_attach({"hot": KeyRange(100, 200)}, "hot", KeyRange(300, 400))

    def test_filling_free_space_needs_no_shrink(self):
        named = {"hot": KeyRange(100, None)}
        self.assertIsNone(plan_attach(named, "hot", KeyRange(None, 100)))


class PlanNarrowTest(unittest.TestCase):
    def setUp(self):
        self.named = {"archive1": KeyRange(None, CUT), "hot": KeyRange(CUT, None)}

    def test_extends_node_below(self):
        new_hot, ext = plan_narrow(self.named, "hot", 1750000000)
        self.assertEqual(new_hot, KeyRange(1750000000, None))
        self.assertEqual(ext, ("archive1", KeyRange(None, 1750000000)))

    def test_bound_below_hot_start_overlaps(self):
        with self.assertRaises(RangeOverlap):
            plan_narrow(self.named, "hot", CUT - 1)

    def test_unchanged_bound_is_compaction_only(self):
        new_hot, ext = plan_narrow(self.named, "hot", CUT)
        self.assertEqual(new_hot, KeyRange(CUT, None))
        self.assertIsNone(ext)

    def test_no_node_below(self):
        with self.assertRaises(RangeGap):
            plan_narrow({"hot": FULL_RANGE}, "hot", 100)

    def test_bound_past_hot_end(self):
        with self.assertRaises(InvalidRange):
            plan_narrow({"a": KeyRange(None, 10), "hot": KeyRange(10, 20)}, "hot", 20)


class PlanReclaimTest(unittest.TestCase):
    def test_absorb_from_either_side(self):
        named = {"a": KeyRange(None, 100), "b": KeyRange(100, 200), "hot": KeyRange(200, None)}
        self.assertEqual(plan_reclaim(named, "b", "a"), KeyRange(None, 200))
        self.assertEqual(plan_reclaim(named, "b", "hot"), KeyRange(100, None))

    def test_non_adjacent_rejected(self):
        named = {"a": KeyRange(None, 100), "b": KeyRange(100, 200), "hot": KeyRange(200, None)}
        with self.assertRaises(RangeGap):
            plan_reclaim(named, "a", "hot")


class RangeTableTest(unittest.TestCase):
    def test_owner_lookup(self):
        table = RangeTable()
        table.add("hot", KeyRange(CUT, None))
        table.add("archive1", KeyRange(None, CUT))
        self.assertEqual(table.owner(100), "archive1")
        self.assertEqual(table.owner(CUT - 1), "archive1")
        self.assertEqual(table.owner(CUT), "hot")
        self.assertEqual(len(table), 2)

    def test_owner_in_gap_is_none(self):
        table = RangeTable()
        table.add("a", KeyRange(0, 100))
        table.add("b", KeyRange(200, None))
        self.assertIsNone(table.owner(150))

    def test_add_replaces_existing_entry(self):
        table = RangeTable()
        table.add("hot", FULL_RANGE)
        table.add("hot", KeyRange(CUT, None))
        self.assertEqual(table.items(), [("hot", KeyRange(CUT, None))])
        self.assertEqual(table.remove("hot"), KeyRange(CUT, None))
        self.assertNotIn("hot", table)


if __name__ == "__main__":
    unittest.main()
