import pytest

from makersai.admission import (
    GENERATION_LIMIT_MESSAGE,
    AdmissionController,
    LayeredAdmission,
    build_admission_controllers,
)
from makersai.config import RateLimitSettings
from makersai.errors import AdmissionRejected


def test_admits_up_to_limit_then_rejects(clock):
    controller = AdmissionController(max_requests=3, window_seconds=60, clock=clock)

    remaining = [controller.admit("1.2.3.4").remaining for _ in range(3)]
    assert remaining == [2, 1, 0]

    rejected = controller.admit("1.2.3.4")
    assert not rejected.allowed
    assert rejected.retry_after_seconds == 60


def test_identities_are_independent(clock):
    controller = AdmissionController(max_requests=1, window_seconds=60, clock=clock)
    assert controller.admit("a").allowed
    assert controller.admit("b").allowed
    assert not controller.admit("a").allowed


def test_window_reopens_after_it_elapses(clock):
    controller = AdmissionController(max_requests=1, window_seconds=60, clock=clock)
    assert controller.admit("a").allowed

    clock.advance(59.5)
    rejected = controller.admit("a")
    assert not rejected.allowed
    assert rejected.retry_after_seconds == 1

    clock.advance(0.5)
    assert controller.admit("a").allowed


def test_check_raises_with_retry_after(clock):
    controller = AdmissionController(max_requests=1, window_seconds=3600, clock=clock)
    controller.check("a")
    clock.advance(100.2)

    with pytest.raises(AdmissionRejected) as excinfo:
        controller.check("a")

    assert excinfo.value.retry_after_seconds == 3500
    assert "Too many requests" in excinfo.value.message


def test_disabled_controller_admits_everything(clock):
    controller = AdmissionController(max_requests=1, window_seconds=60, enabled=False, clock=clock)
    assert all(controller.admit("a").allowed for _ in range(10))


def test_prune_and_reset(clock):
    controller = AdmissionController(max_requests=1, window_seconds=10, clock=clock)
    controller.admit("a")
    controller.admit("b")
    clock.advance(10)
    assert controller.prune() == 2

    controller.admit("a")
    controller.reset("a")
    assert controller.admit("a").allowed


def test_admit_forgets_closed_windows(clock):
    controller = AdmissionController(max_requests=100, window_seconds=900, clock=clock)
    for index in range(5000):
        controller.admit(f"10.0.{index // 256}.{index % 256}")
    assert controller.tracked_identities == 5000

    clock.advance(24 * 3600)
    controller.admit("192.168.1.1")

    assert controller.tracked_identities == 1


def test_admit_prunes_at_most_once_per_window(clock):
    controller = AdmissionController(max_requests=5, window_seconds=60, clock=clock)
    controller.admit("a")
    clock.advance(30)
    controller.admit("b")
    clock.advance(30)
    controller.admit("c")
    assert controller.tracked_identities == 2

    clock.advance(30)
    controller.admit("d")
    assert controller.tracked_identities == 3


def test_invalid_limits_are_rejected():
    with pytest.raises(ValueError):
        AdmissionController(max_requests=0, window_seconds=10)
    with pytest.raises(ValueError):
        AdmissionController(max_requests=1, window_seconds=0)


def test_strict_controller_gets_half_the_budget(clock):
    general, strict = build_admission_controllers(
        RateLimitSettings(window_ms=60000, max_requests=5), clock=clock
    )
    assert general.max_requests == 5
    assert strict.max_requests == 2
    assert strict.window_seconds == 60

    _, minimal = build_admission_controllers(RateLimitSettings(max_requests=1), clock=clock)
    assert minimal.max_requests == 1


def test_layered_admission_stops_at_first_rejection(clock):
    general, strict = build_admission_controllers(
        RateLimitSettings(window_ms=60000, max_requests=4), clock=clock
    )
    layered = LayeredAdmission(general, strict)

    layered.check("a")
    layered.check("a")
    with pytest.raises(AdmissionRejected) as excinfo:
        layered.check("a")

    assert excinfo.value.message == GENERATION_LIMIT_MESSAGE
    assert general.admit("a").remaining == 0
