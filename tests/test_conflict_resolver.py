#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Test ConflictResolver - browsersync

Tests cover:
- Rules cloned without their index
- Index maintenance from queued state (add / update / removal)
- Folding offline changes over downloaded items
- Per-item conflict detection and component callbacks
- Driving a downloaded batch through resolution rounds
"""

import unittest

from browsersync import (
    Config,
    ConflictResolver,
    ConflictRule,
    ItemKey,
    SyncItem,
    UpdateQueue,
)

COMP = "test"


def _item(item_id, is_remove=False, **props):
    return SyncItem(COMP, item_id, properties=props, is_remove=is_remove)


class StubComponent:
    """Resolves conflicts the way a real syncer would, recording each call."""

    def __init__(self):
        self.calls = []
        self.full_items = {}

    def on_item_conflict(self, rule_name, synced_item, conflicting_item):
        self.calls.append((rule_name, synced_item.item_id, conflicting_item.item_id))
        if synced_item.item_id == "testID6b":
            synced_item.set_property("a", "notconflicting")
        elif synced_item.item_id == "testID7b":
            synced_item.set_property("c", "notconflict")
            return [_item("testID7", is_remove=True)]
        elif synced_item.item_id == "Y":
            return [_item("X", is_remove=True)]
        return []

    def get_item_by_id(self, item_id, type_id):
        return self.full_items.get(item_id)


class TestIndexMaintenance(unittest.TestCase):
    """Cloned rules and index updates"""

    def setUp(self):
        self.send_queue = UpdateQueue()
        self.apply_queue = UpdateQueue()
        self.master1 = ConflictRule("test1", None, ["a", "c"])
        self.master2 = ConflictRule("test2", None, ["b", "d"])
        self.master1.add_fingerprint("test", ItemKey(COMP, "value"))
        self.resolver = ConflictResolver(
            {COMP: [self.master1, self.master2]}, {COMP: StubComponent()},
            self.send_queue, self.apply_queue,
        )
        self.rule1, self.rule2 = self.resolver.rules_for(COMP)

    def test_rules_are_cloned_without_values(self):
        self.assertEqual(self.rule1.name, "test1")
        self.assertEqual(self.rule2.name, "test2")
        self.assertFalse(self.rule1.has_fingerprint("test"))
        self.assertTrue(self.master1.has_fingerprint("test"))
        self.assertEqual(self.resolver.rules_for("unknown"), [])

    def test_removal_is_not_indexed(self):
        item = _item("testID1", is_remove=True, a="aValue", b="bValue", c="cValue", d="dValue")
        self.resolver.add_to_index(item)
        self.assertEqual(len(self.rule1), 0)
        self.assertEqual(len(self.rule2), 0)

    def test_regular_item_is_indexed_by_every_rule(self):
        item = _item("testID2", a="aValue", b="bValue", c="cValue", d="dValue")
        self.resolver.add_to_index(item)
        self.assertTrue(self.rule1.has_fingerprint("aValue,cValue"))
        self.assertTrue(self.rule2.has_fingerprint("bValue,dValue"))

    def test_partial_item_is_skipped(self):
        self.resolver.add_to_index(_item("p", a="only a"))
        self.assertEqual(len(self.rule1), 0)

    def test_update_index_with_removal_and_new_item(self):
        item2 = _item("testID2", a="aValue", b="bValue", c="cValue", d="dValue")
        self.resolver.add_to_index(item2)
        self.send_queue.add_item(item2)

        removal = _item("testID2", is_remove=True)
        item3 = _item("testID3", a="aValue2", c="cValue2")
        self.resolver.update_index([removal, item3], is_update=False)

        self.assertFalse(self.rule1.has_fingerprint("aValue,cValue"))
        self.assertFalse(self.rule2.has_fingerprint("bValue,dValue"))
        self.assertTrue(self.rule1.has_fingerprint("aValue2,cValue2"))

    def test_partial_update_is_merged_over_queued_state(self):
        item = _item("u", a="a1", c="c1")
        self.resolver.add_to_index(item)
        self.apply_queue.add_item(item)

        self.resolver.update_index([_item("u", c="c2")], is_update=True)

        self.assertFalse(self.rule1.has_fingerprint("a1,c1"))
        self.assertEqual(self.rule1.lookup_key_for("a1,c2"), ItemKey(COMP, "u"))

    def test_anomaly_listener_reaches_cloned_rules(self):
        seen = []
        resolver = ConflictResolver(
            {COMP: [self.master1]}, {}, UpdateQueue(), UpdateQueue(), on_anomaly=seen.append,
        )
        resolver.add_to_index(_item("one", a="x", c="y"))
        anomalies = resolver.add_to_index(_item("two", a="x", c="y"))
        self.assertEqual(len(anomalies), 1)
        self.assertEqual(seen, anomalies)


class TestResolveConflicts(unittest.TestCase):
    """Offline merge and per-item resolution"""

    def setUp(self):
        Config.reset_defaults()
        self.send_queue = UpdateQueue()
        self.apply_queue = UpdateQueue()
        self.component = StubComponent()
        self.resolver = ConflictResolver(
            {COMP: [ConflictRule("test1", None, ["a", "c"])]}, {COMP: self.component},
            self.send_queue, self.apply_queue,
        )
        self.rule = self.resolver.rules_for(COMP)[0]

    def _queue_offline(self, item):
        self.resolver.add_to_index(item)
        self.send_queue.add_item(item)

    def test_offline_values_win(self):
        offline = _item("testID4", a="offline4A", c="offline4C")
        self._queue_offline(offline)
        synced = _item("testID4", a="synced4bA", c="synced4bC")

        self.assertFalse(self.resolver.smoosh_with_offline(synced))

        self.assertTrue(self.rule.has_fingerprint("offline4A,offline4C"))
        self.assertEqual(self.send_queue.pending_size(), 1)
        self.assertEqual(synced.properties(), {"a": "offline4A", "c": "offline4C"})
        self.assertEqual(self.apply_queue.pending_size(), 0)

    def test_offline_change_already_on_server_is_dropped(self):
        self._queue_offline(_item("same", a="1", c="2"))
        self.assertTrue(self.resolver.smoosh_with_offline(_item("same", a="1", c="2")))
        self.assertFalse(self.send_queue.has_pending())

    def test_server_delete_of_offline_edit_resurrects_full_item(self):
        self.send_queue.add_item(_item("W", title="new"))
        self.component.full_items["W"] = _item("W", a="wa", c="wc", title="new")
        synced = _item("W", is_remove=True)

        self.assertFalse(self.resolver.smoosh_with_offline(synced))

        self.assertFalse(synced.is_remove)
        self.assertEqual(synced.properties(), {"a": "wa", "c": "wc", "title": "new"})
        self.assertTrue(self.rule.has_fingerprint("wa,wc"))
        queued = self.send_queue.get_item_by_lookup_key(ItemKey(COMP, "W"))
        self.assertEqual(queued.properties(), {"a": "wa", "c": "wc", "title": "new"})

    def test_same_item_never_conflicts_with_itself(self):
        self._queue_offline(_item("testID4", a="x", c="y"))
        self._queue_offline(_item("testID5", a="5A", c="5C"))

        resolved = self.resolver.resolve_conflicts(_item("testID5", a="5A", c="5C"), True)

        self.assertEqual(resolved, [])
        self.assertEqual(self.component.calls, [])
        self.assertEqual(self.send_queue.pending_size(), 2)
        queued = self.send_queue.get_item_by_lookup_key(ItemKey(COMP, "testID5"))
        self.assertEqual(queued.properties(), {"a": "5A", "c": "5C"})

    def test_conflict_edited_in_place_is_uploaded(self):
        self._queue_offline(_item("testID6", a="conflicting", c="value"))
        synced = _item("testID6b", a="conflicting", c="value")

        self.resolver.resolve_conflicts(synced, True)

        self.assertEqual(self.component.calls, [("test1", "testID6b", "testID6")])
        self.assertEqual(synced.get_property("a"), "notconflicting")
        self.assertEqual(self.rule.lookup_key_for("conflicting,value"), ItemKey(COMP, "testID6"))
        self.assertEqual(self.rule.lookup_key_for("notconflicting,value"), ItemKey(COMP, "testID6b"))
        self.assertEqual(self.send_queue.pending_size(), 2)
        uploaded = self.send_queue.get_item_by_lookup_key(ItemKey(COMP, "testID6b"))
        self.assertEqual(uploaded.properties(), {"a": "notconflicting", "c": "value"})
        self.assertEqual(self.apply_queue.pending_size(), 0)

    def test_conflict_with_locally_applied_item_returns_removal(self):
        previous = _item("testID7", a="another", c="conflict")
        self.resolver.add_to_index(previous)
        self.apply_queue.add_item(previous)

        resolved = self.resolver.resolve_conflicts(_item("testID7b", a="another", c="conflict"), True)

        self.assertEqual(len(resolved), 1)
        self.assertEqual(resolved[0].key, ItemKey(COMP, "testID7"))
        self.assertTrue(resolved[0].is_remove)
        self.assertFalse(self.rule.has_fingerprint("another,conflict"))
        self.assertEqual(self.rule.lookup_key_for("another,notconflict"), ItemKey(COMP, "testID7b"))
        uploaded = self.send_queue.get_item_by_lookup_key(ItemKey(COMP, "testID7b"))
        self.assertEqual(uploaded.properties(), {"a": "another", "c": "notconflict"})

    def test_resolution_item_is_merged_over_queued_state(self):
        self.apply_queue.add_item(_item("m", a="1", c="2", extra="kept"))
        update = _item("m", c="3")

        self.resolver.resolve_conflicts(update, False)

        self.assertEqual(update.properties(), {"a": "1", "c": "3", "extra": "kept"})
        uploaded = self.send_queue.get_item_by_lookup_key(ItemKey(COMP, "m"))
        self.assertEqual(uploaded.properties(), {"a": "1", "c": "3", "extra": "kept"})


class TestResolveAll(unittest.TestCase):
    """Downloaded batch driver"""

    def setUp(self):
        Config.reset_defaults()
        self.send_queue = UpdateQueue()
        self.apply_queue = UpdateQueue()
        self.component = StubComponent()
        self.resolver = ConflictResolver(
            {COMP: [ConflictRule("url", None, ["url"])]}, {COMP: self.component},
            self.send_queue, self.apply_queue,
        )
        self.rule = self.resolver.rules_for(COMP)[0]
        existing = _item("X", url="http://x")
        self.resolver.add_to_index(existing)
        self.apply_queue.add_item(existing)

    def tearDown(self):
        Config.reset_defaults()

    def test_items_from_resolution_get_their_own_round(self):
        rounds = self.resolver.resolve_all([_item("Y", url="http://x")])

        self.assertEqual(rounds, 2)
        self.assertEqual(self.component.calls, [("url", "Y", "X")])
        self.assertEqual(self.rule.lookup_key_for("http://x"), ItemKey(COMP, "Y"))
        self.assertTrue(self.apply_queue.get_item_by_lookup_key(ItemKey(COMP, "X")).is_remove)
        self.assertIn(ItemKey(COMP, "Y"), self.apply_queue)
        self.assertTrue(self.send_queue.get_item_by_lookup_key(ItemKey(COMP, "X")).is_remove)
        self.assertIn(ItemKey(COMP, "Y"), self.send_queue)

    def test_items_equal_to_offline_change_are_dropped(self):
        self.send_queue.add_item(_item("Z", url="http://z"))

        rounds = self.resolver.resolve_all([_item("Z", url="http://z")])

        self.assertEqual(rounds, 0)
        self.assertNotIn(ItemKey(COMP, "Z"), self.apply_queue)
        self.assertFalse(self.send_queue.has_pending())

    def test_plain_download_is_applied_not_uploaded(self):
        rounds = self.resolver.resolve_all([_item("N", url="http://n"), _item("N", title="t")])

        self.assertEqual(rounds, 1)
        applied = self.apply_queue.get_item_by_lookup_key(ItemKey(COMP, "N"))
        self.assertEqual(applied.properties(), {"url": "http://n", "title": "t"})
        self.assertFalse(self.send_queue.has_pending())

    def test_round_limit(self):
        Config.MAX_RESOLUTION_ROUNDS = 1
        rounds = self.resolver.resolve_all([_item("Y", url="http://x")])

        self.assertEqual(rounds, 1)
        self.assertFalse(self.apply_queue.get_item_by_lookup_key(ItemKey(COMP, "X")).is_remove)


if __name__ == '__main__':
    unittest.main()
