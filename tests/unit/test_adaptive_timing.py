"""Unit tests for adaptive completion-confirm timing."""

from respawn_supervisor.adaptive_timing import AdaptiveTiming


def test_configured_value_used_until_five_samples():
    timing = AdaptiveTiming(min_confirm_ms=1000, max_confirm_ms=60000)
    for _ in range(4):
        timing.record(20000, 30000)

    assert timing.get_confirm_ms(10000) == 10000

    timing.record(20000, 30000)
    assert timing.get_confirm_ms(10000) == 24000  # p75 20000 * 1.2


def test_p75_with_buffer_and_clamping():
    timing = AdaptiveTiming(min_confirm_ms=5000, max_confirm_ms=60000)
    for idle_ms in (1000, 2000, 3000, 4000, 5000, 6000, 7000, 8000):
        timing.record(idle_ms, 10000)

    # sorted[floor(8 * 0.75)] = 7000 -> 8400
    assert timing.get_confirm_ms(10000) == 8400

    timing.set_bounds(9000, 60000)
    assert timing.get_confirm_ms(10000) == 9000

    timing.set_bounds(1000, 2000)
    assert timing.get_confirm_ms(10000) == 2000


def test_window_keeps_last_twenty_samples():
    timing = AdaptiveTiming(min_confirm_ms=0, max_confirm_ms=10_000_000)
    for _ in range(20):
        timing.record(100000, 1)
    for _ in range(20):
        timing.record(1000, 1)

    assert timing.sample_count == 20
    assert timing.get_confirm_ms(5) == 1200


def test_reset_and_to_dict():
    timing = AdaptiveTiming(min_confirm_ms=0, max_confirm_ms=100000)
    for _ in range(5):
        timing.record(1000, 2000)

    data = timing.to_dict()
    assert data["sample_count"] == 5
    assert data["adaptive_completion_confirm_ms"] == 1200
    assert data["recent_cycle_duration_ms"] == [2000] * 5

    timing.reset()
    assert timing.sample_count == 0
    assert timing.get_confirm_ms(777) == 777
    assert timing.to_dict()["adaptive_completion_confirm_ms"] is None
