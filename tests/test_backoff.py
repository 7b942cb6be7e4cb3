"""Tests for BackoffPolicy."""
from photo_migrator.models import UploadConfig
from photo_migrator.utils.backoff import BackoffPolicy


class TestBackoffPolicy:

    def test_doubles_until_cap(self):
        policy = BackoffPolicy(initial=1, factor=2, maximum=10)
        assert list(policy.schedule(7)) == [1, 2, 4, 8, 10, 10]

    def test_single_attempt_has_no_delays(self):
        assert list(BackoffPolicy().schedule(1)) == []

    def test_retry_after_wins_when_longer(self):
        policy = BackoffPolicy(initial=1, factor=2, maximum=60)
        assert policy.next_delay(minimum=7) == 7

    def test_retry_after_is_capped(self):
        policy = BackoffPolicy(initial=1, factor=2, maximum=10)
        assert policy.next_delay(minimum=120) == 10

    def test_never_decreases(self):
        policy = BackoffPolicy(initial=1, factor=2, maximum=60)
        first = policy.next_delay(minimum=8)
        second = policy.next_delay()
        third = policy.next_delay()
        assert first == 8
        assert second == 8
        assert third >= second

    def test_jitter_only_lengthens(self):
        policy = BackoffPolicy(initial=4, factor=2, maximum=100, jitter=True)
        delays = [policy.next_delay() for _ in range(4)]
        assert delays[0] >= 4
        assert delays == sorted(delays)

    def test_reset(self):
        policy = BackoffPolicy(initial=1, factor=2, maximum=10)
        policy.next_delay()
        policy.next_delay()
        policy.reset()
        assert policy.next_delay() == 1

    def test_from_config(self):
        config = UploadConfig(backoff_initial=0.5, backoff_factor=3, backoff_max=20)
        policy = BackoffPolicy.from_config(config)
        assert (policy.initial, policy.factor, policy.maximum) == (0.5, 3, 20)
        assert BackoffPolicy.from_config(config, maximum=5).maximum == 5

    def test_per_call_cap(self):
        policy = BackoffPolicy(initial=16, factor=2, maximum=60)
        assert policy.next_delay(maximum=30) == 16
        assert policy.next_delay(maximum=30) == 30
        assert policy.next_delay() == 60

    def test_per_call_cap_never_lowers_previous_delay(self):
        policy = BackoffPolicy(initial=1, factor=2, maximum=60)
        assert policy.next_delay(minimum=45) == 45
        assert policy.next_delay(maximum=30) == 45
