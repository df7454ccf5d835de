# Tests for instance_registry.py
import os
import sys
import unittest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from ide_types import DiscoveredInstance, HealthState, InstanceKind
from instance_registry import InstanceRegistry


def found(port, kind=InstanceKind.CURSOR, workspace=None, version=None):
    return DiscoveredInstance(port=port, kind=kind, workspace_path=workspace, version=version)


class UpsertTests(unittest.TestCase):
    def setUp(self):
        self.registry = InstanceRegistry()

    def test_new_port_creates_unknown_instance(self):
        result = self.registry.upsert(found(9222, workspace="/w/a", version="0.42"), now=10.0)
        self.assertTrue(result.created)
        self.assertFalse(result.replaced)
        instance = self.registry.get(9222)
        self.assertEqual(instance.health, HealthState.UNKNOWN)
        self.assertEqual(instance.workspace_path, "/w/a")
        self.assertEqual(instance.version, "0.42")
        self.assertEqual(instance.last_seen, 10.0)

    def test_same_process_refreshes_last_seen_and_keeps_health(self):
        self.registry.upsert(found(9222, workspace="/w/a"), now=1.0)
        self.registry.mark_health(9222, HealthState.HEALTHY, now=2.0)
        result = self.registry.upsert(found(9222), now=3.0)
        self.assertFalse(result.created)
        self.assertFalse(result.replaced)
        instance = self.registry.get(9222)
        self.assertEqual(instance.health, HealthState.HEALTHY)
        self.assertEqual(instance.workspace_path, "/w/a")
        self.assertEqual(instance.last_seen, 3.0)

    def test_workspace_learned_later_is_not_a_replacement(self):
        self.registry.upsert(found(9222), now=1.0)
        result = self.registry.upsert(found(9222, workspace="/w/a"), now=2.0)
        self.assertFalse(result.replaced)
        self.assertEqual(self.registry.get(9222).workspace_path, "/w/a")

    def test_different_workspace_on_port_resets_instance(self):
        self.registry.upsert(found(9222, workspace="/w/a"), now=1.0)
        self.registry.mark_health(9222, HealthState.HEALTHY)
        result = self.registry.upsert(found(9222, workspace="/w/b"), now=2.0)
        self.assertTrue(result.replaced)
        instance = self.registry.get(9222)
        self.assertEqual(instance.workspace_path, "/w/b")
        self.assertEqual(instance.health, HealthState.UNKNOWN)

    def test_title_folder_name_matches_launched_full_path(self):
        self.registry.upsert(found(9222, workspace="/home/me/shop"), now=1.0)
        result = self.registry.upsert(found(9222, workspace="shop"), now=2.0)
        self.assertFalse(result.replaced)
        self.assertEqual(self.registry.get(9222).workspace_path, "/home/me/shop")

    def test_different_kind_on_port_resets_instance(self):
        self.registry.upsert(found(9222), now=1.0)
        result = self.registry.upsert(found(9222, kind=InstanceKind.VSCODE), now=2.0)
        self.assertTrue(result.replaced)
        self.assertEqual(self.registry.get(9222).kind, InstanceKind.VSCODE)


class MutationTests(unittest.TestCase):
    def setUp(self):
        self.registry = InstanceRegistry()
        self.registry.upsert(found(9223), now=1.0)
        self.registry.upsert(found(9222), now=1.0)

    def test_mark_health_returns_previous_state(self):
        self.assertEqual(self.registry.mark_health(9222, HealthState.DEGRADED, now=5.0), HealthState.UNKNOWN)
        self.assertEqual(self.registry.mark_health(9222, HealthState.HEALTHY, now=6.0), HealthState.DEGRADED)
        self.assertEqual(self.registry.get(9222).last_health_check, 6.0)
        self.assertIsNone(self.registry.mark_health(9999, HealthState.HEALTHY))

    def test_unreachable_result_does_not_refresh_last_seen(self):
        self.registry.mark_health(9222, HealthState.UNREACHABLE, now=9.0)
        self.assertEqual(self.registry.get(9222).last_seen, 1.0)

    def test_remove_notifies_listeners(self):
        seen = []
        self.registry.add_removal_listener(lambda instance, reason: seen.append((instance.id, reason)))
        removed = self.registry.remove(9222, "stopped")
        self.assertEqual(removed.id, 9222)
        self.assertEqual(seen, [(9222, "stopped")])
        self.assertNotIn(9222, self.registry)
        self.assertIsNone(self.registry.remove(9222))
        self.assertEqual(len(seen), 1)

    def test_readers_get_copies(self):
        snapshot = self.registry.all()
        self.assertEqual([item.id for item in snapshot], [9222, 9223])
        snapshot[0].health = HealthState.UNREACHABLE
        self.assertEqual(self.registry.get(9222).health, HealthState.UNKNOWN)

    def test_set_workspace(self):
        updated = self.registry.set_workspace(9223, "/w/manual")
        self.assertEqual(updated.workspace_path, "/w/manual")
        self.assertIsNone(self.registry.set_workspace(9999, "/w/x"))
        self.assertEqual(len(self.registry), 2)


if __name__ == "__main__":
    unittest.main()
