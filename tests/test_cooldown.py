"""Tests for per (rule, subject) cooldown tracking."""
import threading
from concurrent.futures import ThreadPoolExecutor

from pricewatch.rules.cooldown import CooldownTracker, InMemoryCooldownStore


class TestCooldownTracker:

    def test_never_fired_is_eligible(self, cooldown):
        assert cooldown.is_eligible("r1", "token-A", 3600) is True
        assert cooldown.last_fired("r1", "token-A") is None

    def test_boundary_is_inclusive(self, cooldown, clock):
        fired = clock()
        cooldown.record_fired("r1", "token-A")

        clock.advance(3599)
        assert cooldown.is_eligible("r1", "token-A", 3600) is False
        clock.advance(1)
        assert cooldown.is_eligible("r1", "token-A", 3600) is True
        assert cooldown.last_fired("r1", "token-A") == fired

    def test_keys_are_independent(self, cooldown):
        cooldown.record_fired("r1", "token-A")
        assert cooldown.is_eligible("r1", "token-A", 3600) is False
        assert cooldown.is_eligible("r1", "token-B", 3600) is True
        assert cooldown.is_eligible("r2", "token-A", 3600) is True

    def test_zero_cooldown_always_eligible(self, cooldown):
        cooldown.record_fired("r1", "token-A")
        assert cooldown.is_eligible("r1", "token-A", 0) is True

    def test_clear(self, cooldown):
        cooldown.record_fired("r1", "token-A")
        assert cooldown.clear("r1", "token-A") is True
        assert cooldown.is_eligible("r1", "token-A", 3600) is True
        assert cooldown.clear("r1", "token-A") is False

    def test_sql_store_backend(self, cooldown_store, clock):
        tracker = CooldownTracker(cooldown_store, clock=clock)
        tracker.record_fired("r1", "token-A")
        clock.advance(10)
        assert tracker.is_eligible("r1", "token-A", 60) is False
        clock.advance(50)
        assert tracker.is_eligible("r1", "token-A", 60) is True


class TestCooldownLocking:

    def test_only_one_worker_fires_per_key(self, clock):
        """Check-and-record under the key lock: concurrent workers fire once."""
        tracker = CooldownTracker(InMemoryCooldownStore(), clock=clock)
        fired = []
        start = threading.Barrier(8)

        def worker(n):
            start.wait()
            with tracker.lock("r1", "token-A"):
                if tracker.is_eligible("r1", "token-A", 3600):
                    fired.append(n)
                    tracker.record_fired("r1", "token-A")

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(worker, range(8)))

        assert len(fired) == 1
