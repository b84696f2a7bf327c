import pytest

from usd1_radar.backoff import HEALTH_BACKOFF, RETRY_BACKOFF, BackoffPolicy


def test_health_backoff_doubles_until_cap() -> None:
    assert HEALTH_BACKOFF.delay(0) == 0.0
    assert HEALTH_BACKOFF.delay(1) == 30.0
    assert HEALTH_BACKOFF.delay(2) == 60.0
    assert HEALTH_BACKOFF.delay(3) == 120.0
    assert HEALTH_BACKOFF.delay(4) == 240.0
    assert HEALTH_BACKOFF.delay(5) == 300.0
    assert HEALTH_BACKOFF.delay(50) == 300.0


def test_retry_backoff_caps_at_one_hour() -> None:
    assert RETRY_BACKOFF.delay(1) == 60.0
    assert RETRY_BACKOFF.delay(4) == 480.0
    assert RETRY_BACKOFF.delay(10_000) == 3600.0


def test_ready_compares_elapsed_time() -> None:
    policy = BackoffPolicy(base=10.0)
    assert not policy.ready(1, last_at=100.0, now=109.9)
    assert policy.ready(1, last_at=100.0, now=110.0)
    assert policy.ready(0, last_at=100.0, now=100.0)


def test_uncapped_policy_grows() -> None:
    policy = BackoffPolicy(base=1.0, multiplier=3.0)
    assert policy.delay(3) == pytest.approx(9.0)
