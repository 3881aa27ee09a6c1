"""
Request registry: create / get / remove / cancel semantics and thread safety.
"""

import threading
import unittest

from relay_hub.common.errors import SessionConflictError
from relay_hub.core.registry import RequestRegistry, StreamState

SINK = object()


class TestRequestRegistry(unittest.TestCase):
    def setUp(self):
        self.registry = RequestRegistry()

    def test_create_get_remove(self):
        s = self.registry.create("r1", SINK)
        self.assertIs(self.registry.get("r1"), s)
        self.assertIs(s.destination, SINK)
        self.assertFalse(s.cancelled)
        self.assertEqual(s.state, StreamState.IDLE)
        self.assertTrue(self.registry.remove("r1"))
        self.assertIsNone(self.registry.get("r1"))
        self.assertFalse(self.registry.remove("r1"))

    def test_live_id_conflicts(self):
        self.registry.create("r1", SINK)
        with self.assertRaises(SessionConflictError):
            self.registry.create("r1", SINK)

    def test_reused_id_is_a_new_session(self):
        old = self.registry.create("r1", SINK)
        self.registry.remove("r1", old)
        new = self.registry.create("r1", SINK)
        self.assertIsNot(old, new)
        self.assertFalse(self.registry.is_live(old))
        self.assertTrue(self.registry.is_live(new))
        # leftover work from the old session must not retire the new one
        self.assertFalse(self.registry.remove("r1", old))
        self.assertIs(self.registry.get("r1"), new)

    def test_cancel_marks_and_retires(self):
        s = self.registry.create("r1", SINK)
        self.assertIs(self.registry.cancel("r1"), s)
        self.assertTrue(s.cancelled)
        self.assertFalse(self.registry.is_live(s))
        self.assertIsNone(self.registry.get("r1"))
        self.assertIsNone(self.registry.cancel("r1"))

    def test_accumulation_and_snapshot(self):
        s = self.registry.create("r1", SINK)
        s.append("Hello")
        s.append(" world")
        self.assertEqual(s.accumulated_text, "Hello world")
        (info,) = self.registry.snapshot()
        self.assertEqual(info.request_id, "r1")
        self.assertEqual(info.accumulated_chars, 11)
        self.assertEqual(info.state, "idle")

    def test_concurrent_create_and_cancel(self):
        ids = [f"r{i}" for i in range(200)]
        errors = []

        def create_all():
            for rid in ids:
                try:
                    self.registry.create(rid, SINK)
                except SessionConflictError as e:
                    errors.append(e)

        def cancel_all():
            for rid in ids:
                self.registry.cancel(rid)

        threads = [threading.Thread(target=create_all), threading.Thread(target=cancel_all)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        for info in self.registry.snapshot():
            self.assertFalse(self.registry.get(info.request_id).cancelled)


if __name__ == "__main__":
    unittest.main(verbosity=2)
