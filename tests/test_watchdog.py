"""Failure counter and liveness watchdog."""

import threading
import unittest

from securestream.watchdog import FailureCounter, LivenessWatchdog


class TestFailureCounter(unittest.TestCase):
    def setUp(self):
        self.trips = 0

        def on_trip():
            self.trips += 1

        self.counter = FailureCounter(threshold=10, on_trip=on_trip)

    def test_tenth_failure_trips_once(self):
        results = [self.counter.record_failure() for _ in range(10)]
        self.assertEqual(results, [False] * 9 + [True])
        self.assertEqual(self.trips, 1)
        self.assertEqual(self.counter.count, 0)

    def test_next_failure_after_trip_starts_fresh(self):
        for _ in range(10):
            self.counter.record_failure()
        self.assertFalse(self.counter.record_failure())
        self.assertEqual(self.counter.count, 1)
        self.assertEqual(self.trips, 1)

    def test_success_between_failures_prevents_trip(self):
        for _ in range(5):
            self.counter.record_failure()
        self.counter.record_success()
        for _ in range(5):
            self.counter.record_failure()
        self.assertEqual(self.trips, 0)
        self.assertEqual(self.counter.count, 5)

    def test_twenty_failures_trip_twice(self):
        for _ in range(20):
            self.counter.record_failure()
        self.assertEqual(self.trips, 2)

    def test_invalid_threshold(self):
        with self.assertRaises(ValueError):
            FailureCounter(threshold=0)
        with self.assertRaises(ValueError):
            self.counter.set_threshold(0)
        self.assertEqual(self.counter.threshold, 10)

    def test_set_threshold_applies_to_next_failure(self):
        for _ in range(3):
            self.counter.record_failure()
        self.counter.set_threshold(4)
        self.assertEqual(self.counter.threshold, 4)
        self.assertTrue(self.counter.record_failure())
        self.assertEqual(self.trips, 1)

    def test_set_threshold_concurrent_with_failures(self):
        barrier = threading.Barrier(2)

        def fail():
            barrier.wait()
            for _ in range(1000):
                self.counter.record_failure()

        def retune():
            barrier.wait()
            for n in range(1000):
                self.counter.set_threshold(5 if n % 2 else 10)

        threads = [threading.Thread(target=fail), threading.Thread(target=retune)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5.0)
        self.assertLess(self.counter.count, 10)
        self.assertGreaterEqual(self.trips, 100)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestLivenessWatchdog(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.timeouts = 0

    def _on_timeout(self):
        self.timeouts += 1

    def test_disabled_never_fires(self):
        for limit in (0, -1, -65.0):
            dog = LivenessWatchdog(limit, self._on_timeout, clock=self.clock)
            self.assertFalse(dog.enabled)
            self.assertFalse(dog.check(now=10 ** 9))
        self.assertEqual(self.timeouts, 0)

    def test_fires_after_limit(self):
        dog = LivenessWatchdog(65, self._on_timeout, clock=self.clock)
        self.assertFalse(dog.check(now=64.9))
        self.assertTrue(dog.check(now=65.0))
        self.assertEqual(self.timeouts, 1)

    def test_fires_only_once(self):
        dog = LivenessWatchdog(65, self._on_timeout, clock=self.clock)
        dog.check(now=100)
        dog.check(now=200)
        self.assertEqual(self.timeouts, 1)
        self.assertTrue(dog.fired)

    def test_pong_rearms_deadline(self):
        dog = LivenessWatchdog(65, self._on_timeout, clock=self.clock)
        self.clock.now = 60
        dog.pong()
        self.assertFalse(dog.check(now=100))
        self.clock.now = 124
        dog.mark_alive()
        self.assertFalse(dog.check(now=188))
        self.assertTrue(dog.check(now=189))

    def test_thread_fires_on_silence(self):
        fired = threading.Event()
        dog = LivenessWatchdog(0.1, fired.set, poll_s=0.02)
        dog.start()
        try:
            self.assertTrue(fired.wait(2.0))
        finally:
            dog.stop()

    def test_thread_kept_alive_by_traffic(self):
        fired = threading.Event()
        dog = LivenessWatchdog(0.5, fired.set, poll_s=0.02)
        dog.start()
        try:
            for _ in range(10):
                dog.mark_alive()
                self.assertFalse(fired.wait(0.05))
        finally:
            dog.stop()

    def test_start_when_disabled_is_noop(self):
        dog = LivenessWatchdog(0, self._on_timeout)
        dog.start()
        dog.stop()
        self.assertEqual(self.timeouts, 0)


if __name__ == "__main__":
    unittest.main()
