from salonping.services.messaging.rate_limiter import RateLimiter

from conftest import FakeMonotonic


def test_limit_per_window_then_lazy_reset():
    clock = FakeMonotonic()
    limiter = RateLimiter(limit=10, window_seconds=60, clock=clock)

    assert all(limiter.try_consume("salon-a") for _ in range(10))
    assert limiter.try_consume("salon-a") is False
    assert limiter.remaining("salon-a") == 0

    clock.advance(60)
    assert limiter.window("salon-a") is None
    assert limiter.try_consume("salon-a") is True
    assert limiter.window("salon-a").count == 1


def test_tenants_have_independent_windows():
    limiter = RateLimiter(limit=1, window_seconds=60, clock=FakeMonotonic())

    assert limiter.try_consume("salon-a")
    assert not limiter.try_consume("salon-a")
    assert limiter.try_consume("salon-b")


def test_reset_clears_window():
    limiter = RateLimiter(limit=1, window_seconds=60, clock=FakeMonotonic())
    limiter.try_consume("salon-a")
    limiter.reset("salon-a")

    assert limiter.remaining("salon-a") == 1
