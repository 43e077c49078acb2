"""
Tests for the sliding-window webhook rate limiter.
"""

from unittest.mock import MagicMock

from sigcore.webhooks.rate_limit import SlidingWindowRateLimiter, client_ip


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestSlidingWindowRateLimiter:
    def test_allows_up_to_limit(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(limit=3, window_seconds=60, clock=clock)

        assert [limiter.hit("ip") for _ in range(3)] == [None, None, None]
        retry_after = limiter.hit("ip")

        assert retry_after is not None
        assert 0 < retry_after <= 60

    def test_window_slides(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(limit=2, window_seconds=60, clock=clock)
        limiter.hit("ip")
        clock.now += 30
        limiter.hit("ip")
        assert limiter.hit("ip") is not None

        clock.now += 31
        assert limiter.hit("ip") is None

    def test_keys_are_independent(self) -> None:
        limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=FakeClock())

        assert limiter.hit("a") is None
        assert limiter.hit("b") is None
        assert limiter.hit("a") is not None


class TestClientIp:
    def _request(self, headers: dict[str, str], host: str | None = "10.0.0.1") -> MagicMock:
        request = MagicMock()
        request.headers = headers
        request.client.host = host
        return request

    def test_forwarded_for_first_hop(self) -> None:
        request = self._request({"x-forwarded-for": "203.0.113.5, 10.0.0.2"})
        assert client_ip(request) == "203.0.113.5"

    def test_real_ip(self) -> None:
        assert client_ip(self._request({"x-real-ip": "198.51.100.7"})) == "198.51.100.7"

    def test_peer_address(self) -> None:
        assert client_ip(self._request({})) == "10.0.0.1"
