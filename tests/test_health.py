from usd1_radar.health import (
    DEFAULT_SOURCES,
    SOURCE_DEXSCREENER,
    SOURCE_HELIUS,
    ApiHealthMonitor,
)


def test_all_default_sources_start_healthy(clock) -> None:
    monitor = ApiHealthMonitor(clock=clock)
    assert sorted(monitor.sources()) == sorted(DEFAULT_SOURCES)
    assert all(monitor.is_healthy(name) for name in DEFAULT_SOURCES)


def test_three_errors_back_off_for_120_seconds(clock) -> None:
    monitor = ApiHealthMonitor(clock=clock)
    for _ in range(3):
        monitor.mark_error(SOURCE_DEXSCREENER, RuntimeError("429"))

    assert monitor.state(SOURCE_DEXSCREENER).error_count == 3
    assert not monitor.is_healthy(SOURCE_DEXSCREENER)
    clock.advance(119)
    assert not monitor.is_healthy(SOURCE_DEXSCREENER)
    assert monitor.backoff_remaining(SOURCE_DEXSCREENER) == 1.0
    clock.advance(1)
    assert monitor.is_healthy(SOURCE_DEXSCREENER)


def test_half_open_retry_keeps_error_count(clock) -> None:
    monitor = ApiHealthMonitor(clock=clock)
    monitor.mark_error(SOURCE_HELIUS)
    clock.advance(30)
    assert monitor.is_healthy(SOURCE_HELIUS)
    assert monitor.state(SOURCE_HELIUS).error_count == 1

    monitor.mark_error(SOURCE_HELIUS)
    clock.advance(59)
    assert not monitor.is_healthy(SOURCE_HELIUS)
    clock.advance(1)
    assert monitor.is_healthy(SOURCE_HELIUS)


def test_reset_clears_errors(clock) -> None:
    monitor = ApiHealthMonitor(clock=clock)
    monitor.mark_error(SOURCE_DEXSCREENER)
    monitor.reset_health(SOURCE_DEXSCREENER)
    assert monitor.is_healthy(SOURCE_DEXSCREENER)
    assert monitor.snapshot()[SOURCE_DEXSCREENER] == {
        "healthy": True,
        "errorCount": 0,
        "lastErrorAt": clock.now,
    }


def test_unknown_source_is_created_healthy(clock) -> None:
    monitor = ApiHealthMonitor([], clock=clock)
    assert monitor.is_healthy("birdeye")
    assert "birdeye" in monitor.sources()
