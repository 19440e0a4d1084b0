import math

from upload_service.client.throughput import ThroughputMeter, format_bytes, format_duration, format_speed


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_speed_over_trailing_window() -> None:
    clock = _Clock()
    meter = ThroughputMeter(window_seconds=5, clock=clock)
    assert meter.speed() == 0.0

    clock.now = 1.0
    meter.record(100)
    assert meter.speed() == 100.0

    clock.now = 2.0
    meter.record(100)
    assert meter.speed() == 100.0

    clock.now = 10.0
    meter.record(500)
    # Only the last sample is inside the window.
    assert meter.speed() == 100.0

    clock.now = 20.0
    assert meter.speed() == 0.0


def test_eta_from_current_speed() -> None:
    clock = _Clock()
    meter = ThroughputMeter(window_seconds=5, clock=clock)
    assert math.isinf(meter.eta(1000))

    clock.now = 2.0
    meter.record(400)
    assert meter.eta(1000) == 5.0
    assert meter.eta(0) == 0.0


def test_format_bytes() -> None:
    assert format_bytes(0) == "0 B"
    assert format_bytes(512) == "512 B"
    assert format_bytes(1024) == "1 KB"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(5 * 1024 * 1024) == "5 MB"
    assert format_speed(2048) == "2 KB/s"


def test_format_duration() -> None:
    assert format_duration(5) == "5s"
    assert format_duration(65) == "1m 5s"
    assert format_duration(3725) == "1h 2m 5s"
    assert format_duration(math.inf) == "--:--"
    assert format_duration(-1) == "--:--"
