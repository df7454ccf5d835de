# Tests for event_fanout.py
import os
import sys
import unittest
from unittest.mock import MagicMock

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from event_fanout import EventFanout
from ide_types import Event, EventType, SelectionStrategy


class FanoutDeliveryTests(unittest.IsolatedAsyncioTestCase):
    async def test_instance_events_reach_every_subscriber(self):
        fanout = EventFanout()
        first = fanout.subscribe("c1")
        second = fanout.subscribe("c2")
        fanout.publish(Event.instance_found(9222))
        self.assertEqual((await first.next_event(0.1)).data, {"id": 9222})
        self.assertEqual((await second.next_event(0.1)).type, EventType.INSTANCE_FOUND)

    async def test_active_changed_is_scoped_to_its_client(self):
        fanout = EventFanout()
        mine = fanout.subscribe("c1")
        other = fanout.subscribe("c2")
        fanout.publish(Event.active_changed("c1", None, 9222, SelectionStrategy.FIRST_AVAILABLE))
        event = await mine.next_event(0.1)
        self.assertEqual(event.data["current"], 9222)
        self.assertIsNone(await other.next_event(0.01))

    async def test_sequence_numbers_increase(self):
        fanout = EventFanout()
        sub = fanout.subscribe("c1")
        fanout.publish(Event.instance_found(9222))
        fanout.publish(Event.instance_lost(9222))
        seqs = [(await sub.next_event(0.1)).seq for _ in range(2)]
        self.assertEqual(seqs, [1, 2])
        self.assertIsNone(await sub.next_event(0.01))

    async def test_late_subscriber_gets_no_replay(self):
        fanout = EventFanout()
        fanout.publish(Event.instance_found(9222))
        late = fanout.subscribe("c1")
        self.assertIsNone(await late.next_event(0.01))

    async def test_unsubscribed_queue_gets_nothing(self):
        fanout = EventFanout()
        sub = fanout.subscribe("c1")
        fanout.unsubscribe(sub)
        fanout.publish(Event.instance_found(9222))
        self.assertTrue(sub.queue.empty())
        self.assertEqual(fanout.subscriber_count, 0)

    async def test_publish_invalidates_cache_first(self):
        cache = MagicMock()
        fanout = EventFanout(cache=cache)
        event = fanout.publish(Event.instance_lost(9222))
        cache.handle_event.assert_called_once_with(event)


class SlowSubscriberTests(unittest.IsolatedAsyncioTestCase):
    async def test_overflow_drops_oldest_and_marks_behind(self):
        fanout = EventFanout(queue_size=2)
        slow = fanout.subscribe("c1")
        fast = fanout.subscribe("c2")
        for port in (9222, 9223, 9224):
            fanout.publish(Event.instance_found(port))

        self.assertTrue(slow.behind)
        self.assertEqual(slow.dropped, 1)
        self.assertEqual((await slow.next_event(0.1)).data["id"], 9223)

        self.assertTrue(fast.behind)
        self.assertTrue(fast.take_resync())
        self.assertFalse(fast.take_resync())
        self.assertTrue(fast.queue.empty())

    async def test_publish_never_blocks(self):
        fanout = EventFanout(queue_size=1)
        sub = fanout.subscribe("c1")
        for port in range(9222, 9322):
            fanout.publish(Event.instance_found(port))
        self.assertEqual(sub.dropped, 99)
        last = sub.queue.get_nowait()
        self.assertEqual((last.seq, last.data["id"]), (100, 9321))


if __name__ == "__main__":
    unittest.main()
