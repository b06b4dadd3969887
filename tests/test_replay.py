"""Replay guard acceptance window."""

import unittest

from securestream.replay import ReplayGuard, auth_timestamp


class FakeClock:
    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> int:
        return self.now


class TestReplayGuard(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock(1_000_000)
        self.guard = ReplayGuard(jitter_ms=10, clock=self.clock)
        # Construction time counts as the last accepted timestamp.
        self.clock.now += 1000

    def test_zero_delta_accepted(self):
        self.assertTrue(self.guard.authenticate(str(self.clock.now)))
        self.assertEqual(self.guard.last_accepted, self.clock.now)

    def test_delta_at_window_edge_accepted(self):
        self.assertTrue(self.guard.authenticate(str(self.clock.now - 10).encode()))

    def test_delta_past_window_rejected(self):
        self.assertFalse(self.guard.authenticate(str(self.clock.now - 11)))

    def test_future_timestamp_rejected(self):
        self.assertFalse(self.guard.authenticate(str(self.clock.now + 1)))

    def test_rejection_leaves_state_unchanged(self):
        before = self.guard.last_accepted
        self.assertFalse(self.guard.authenticate(str(self.clock.now - 50)))
        self.assertEqual(self.guard.last_accepted, before)

    def test_unparseable_rejected(self):
        for value in ("", "abc", "12.5", b"\xff\xfe", None):
            self.assertFalse(self.guard.authenticate(value), value)

    def test_monotonic_sequence(self):
        """Later timestamps pass; replaying an earlier one always fails."""
        t1 = self.clock.now - 5
        t2 = self.clock.now - 2
        self.assertTrue(self.guard.authenticate(str(t1)))
        self.assertTrue(self.guard.authenticate(str(t2)))
        self.assertFalse(self.guard.authenticate(str(t1)))
        self.assertFalse(self.guard.authenticate(str(t2)))

    def test_out_of_order_within_window_rejected(self):
        t2 = self.clock.now - 2
        self.assertTrue(self.guard.authenticate(str(t2)))
        self.assertFalse(self.guard.authenticate(str(t2 - 1)))

    def test_timestamp_before_construction_rejected(self):
        clock = FakeClock(5000)
        guard = ReplayGuard(jitter_ms=100, clock=clock)
        clock.now = 5050
        self.assertFalse(guard.authenticate("4990"))
        self.assertTrue(guard.authenticate("5040"))

    def test_wider_window_configurable(self):
        guard = ReplayGuard(jitter_ms=500, clock=self.clock)
        self.clock.now += 1000
        self.assertTrue(auth_timestamp(guard, str(self.clock.now - 400)))

    def test_negative_jitter_invalid(self):
        with self.assertRaises(ValueError):
            ReplayGuard(jitter_ms=-1, clock=self.clock)
        with self.assertRaises(ValueError):
            self.guard.set_jitter(-1)
        self.assertEqual(self.guard.jitter_ms, 10)

    def test_set_jitter_widens_window(self):
        self.assertFalse(self.guard.authenticate(str(self.clock.now - 40)))
        self.guard.set_jitter(50)
        self.assertEqual(self.guard.jitter_ms, 50)
        self.assertTrue(self.guard.authenticate(str(self.clock.now - 40)))


if __name__ == "__main__":
    unittest.main()
