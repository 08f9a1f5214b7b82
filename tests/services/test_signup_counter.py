"""
Tests for the daily signup tier counter.
"""

import threading
from datetime import date

import pytest

from palette.services import signup_counter
from palette.services.signup_counter import (
    TIER_CAPACITY_REACHED,
    TIER_EARLY_BIRD,
    TIER_NORMAL,
    SignupCounterContentionError,
    observe_signup,
    tier_for_count,
)

DAY = date(2026, 10, 18)


class TestTierForCount:
    @pytest.mark.parametrize(
        "count,expected",
        [
            (1, (TIER_EARLY_BIRD, 2)),
            (30, (TIER_EARLY_BIRD, 2)),
            (31, (TIER_NORMAL, 1)),
            (300, (TIER_NORMAL, 1)),
            (301, (TIER_CAPACITY_REACHED, 0)),
        ],
    )
    def test_boundaries(self, count, expected):
        assert tier_for_count(count) == expected


class TestObserveSignup:
    def test_first_observation_creates_row(self, fake_db):
        observation = observe_signup(DAY)

        assert observation.count == 1
        assert observation.tier == TIER_EARLY_BIRD
        assert observation.is_early_bird
        assert fake_db.rows("daily_signup_counts")[0]["count"] == 1

    def test_sequential_observations_increment(self, fake_db):
        counts = [observe_signup(DAY).count for _ in range(5)]
        assert counts == [1, 2, 3, 4, 5]

    def test_days_are_independent(self, fake_db):
        observe_signup(DAY)
        assert observe_signup(date(2026, 10, 19)).count == 1

    def test_concurrent_first_signups(self, fake_db):
        """35 simultaneous signups: 30 early birds, 5 normal, stored count 35"""
        observations = []
        errors = []
        lock = threading.Lock()
        barrier = threading.Barrier(35)

        def worker():
            barrier.wait()
            try:
                result = observe_signup(DAY)
                with lock:
                    observations.append(result)
            except Exception as e:
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(35)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(o.count for o in observations) == list(range(1, 36))
        assert sum(o.tier == TIER_EARLY_BIRD for o in observations) == 30
        assert sum(o.tier == TIER_NORMAL for o in observations) == 5
        assert fake_db.rows("daily_signup_counts")[0]["count"] == 35

    def test_contention_exhaustion_raises(self, fake_db, monkeypatch):
        fake_db.add_test_data("daily_signup_counts", [{"date": DAY.isoformat(), "count": 4}])
        monkeypatch.setattr(signup_counter.usage_limits, "SIGNUP_COUNTER_CAS_MAX_ATTEMPTS", 3)
        monkeypatch.setattr(
            signup_counter.signup_counts, "compare_and_set_count", lambda *args: False
        )
        monkeypatch.setattr(signup_counter.time, "sleep", lambda _: None)

        with pytest.raises(SignupCounterContentionError):
            observe_signup(DAY)
