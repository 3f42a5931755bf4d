"""Tests for fixed-window admission control."""

import pytest

from remit.rate_limit import FixedWindowRateLimiter, client_identity, rate_limit_key


class TestFixedWindowRateLimiter:
    def test_window_capacity_and_reset(self):
        limiter = FixedWindowRateLimiter(max_requests=2, window_ms=1000)
        assert limiter.check("k", now_ms=0).allowed
        assert limiter.check("k", now_ms=10).allowed

        denied = limiter.check("k", now_ms=20)
        assert not denied.allowed
        assert denied.retry_after_seconds == 1

        assert limiter.check("k", now_ms=1001).allowed

    def test_retry_after_rounds_up(self):
        limiter = FixedWindowRateLimiter(max_requests=1, window_ms=60_000)
        limiter.check("k", now_ms=0)
        assert limiter.check("k", now_ms=500).retry_after_seconds == 60
        assert limiter.check("k", now_ms=59_001).retry_after_seconds == 1

    def test_keys_are_independent(self):
        limiter = FixedWindowRateLimiter(max_requests=1, window_ms=1000)
        assert limiter.check("a", now_ms=0).allowed
        assert limiter.check("b", now_ms=0).allowed
        assert not limiter.check("a", now_ms=1).allowed

    def test_denied_requests_do_not_extend_window(self):
        limiter = FixedWindowRateLimiter(max_requests=1, window_ms=1000)
        limiter.check("k", now_ms=0)
        for t in (100, 500, 999):
            assert not limiter.check("k", now_ms=t).allowed
        assert limiter.check("k", now_ms=1000).allowed

    def test_expired_windows_are_evicted(self):
        limiter = FixedWindowRateLimiter(max_requests=1, window_ms=1000, max_tracked_keys=2)
        limiter.check("a", now_ms=0)
        limiter.check("b", now_ms=500)
        assert len(limiter) == 2

        limiter.check("c", now_ms=1200)
        assert len(limiter) == 2
        assert not limiter.check("b", now_ms=1300).allowed
        assert limiter.check("a", now_ms=1300).allowed

    def test_live_windows_survive_eviction(self):
        limiter = FixedWindowRateLimiter(max_requests=1, window_ms=1000, max_tracked_keys=1)
        limiter.check("a", now_ms=0)
        limiter.check("b", now_ms=10)
        assert not limiter.check("a", now_ms=20).allowed

    @pytest.mark.parametrize("max_requests,window_ms,max_tracked_keys", [(0, 1000, 1), (1, 0, 1), (1, 1000, 0)])
    def test_rejects_non_positive_settings(self, max_requests, window_ms, max_tracked_keys):
        with pytest.raises(ValueError):
            FixedWindowRateLimiter(max_requests, window_ms, max_tracked_keys)


def test_rate_limit_key_defaults_unknown_client():
    assert rate_limit_key("create-invoice", "") == "create-invoice:unknown"
    assert rate_limit_key("create-invoice", "10.0.0.1") == "create-invoice:10.0.0.1"


class TestClientIdentity:
    def test_first_forwarded_hop_wins(self):
        assert client_identity({"X-Forwarded-For": "1.1.1.1, 2.2.2.2"}) == "1.1.1.1"

    def test_falls_back_to_other_proxy_headers(self):
        assert client_identity({"cf-connecting-ip": "3.3.3.3"}) == "3.3.3.3"
        assert client_identity({"x-real-ip": "4.4.4.4"}) == "4.4.4.4"

    def test_unknown_without_headers(self):
        assert client_identity({}) == "unknown"
