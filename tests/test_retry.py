"""Tests for async retry with exponential backoff."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from shopify_server.retry import RetryPolicy, retry_with_backoff, transient_reason

NO_JITTER = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=60.0, jitter=0.0)


def _status_error(status: int, headers: dict | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://acme.myshopify.com/admin/api/2025-01/graphql.json")
    response = httpx.Response(status, headers=headers, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


def _mock(*side_effect) -> AsyncMock:
    fn = AsyncMock(side_effect=list(side_effect))
    fn.__name__ = "list_webhooks"
    return fn


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_success_no_retry(self):
        fn = _mock("ok")
        with patch("shopify_server.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await retry_with_backoff(NO_JITTER)(fn)() == "ok"
        assert fn.call_count == 1
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_retries_transient_status(self):
        fn = _mock(_status_error(429), _status_error(503), "ok")
        with patch("shopify_server.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await retry_with_backoff(NO_JITTER)(fn)() == "ok"
        assert fn.call_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_status_raises(self):
        fn = _mock(_status_error(404))
        with patch("shopify_server.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(httpx.HTTPStatusError):
                await retry_with_backoff(NO_JITTER)(fn)()
        assert fn.call_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        fn = _mock(*[_status_error(500)] * 3)
        with patch("shopify_server.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(httpx.HTTPStatusError):
                await retry_with_backoff(RetryPolicy(max_retries=2, jitter=0.0))(fn)()
        assert fn.call_count == 3

    @pytest.mark.asyncio
    async def test_connection_errors_retried(self):
        request = httpx.Request("POST", "https://acme.myshopify.com")
        fn = _mock(httpx.ConnectError("refused", request=request), "ok")
        with patch("shopify_server.retry.asyncio.sleep", new=AsyncMock()):
            assert await retry_with_backoff(RetryPolicy(max_retries=1))(fn)() == "ok"

    @pytest.mark.asyncio
    async def test_other_errors_propagate_immediately(self):
        fn = _mock(KeyError("data"))
        with pytest.raises(KeyError):
            await retry_with_backoff(NO_JITTER)(fn)()
        assert fn.call_count == 1


class TestTransientReason:
    def test_classification(self):
        request = httpx.Request("GET", "https://acme.myshopify.com")
        assert transient_reason(_status_error(502)) == "HTTP 502"
        assert transient_reason(_status_error(401)) is None
        assert transient_reason(httpx.ReadTimeout("slow", request=request)) == "ReadTimeout"
        assert transient_reason(ValueError("x")) is None


class TestRetryPolicy:
    def test_exponential_without_jitter(self):
        assert NO_JITTER.delay_for(0) == 1.0
        assert NO_JITTER.delay_for(3) == 8.0

    def test_capped(self):
        assert RetryPolicy(max_delay=30.0, jitter=0.0).delay_for(10) == 30.0

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay=1.0, jitter=0.3)
        for _ in range(50):
            assert 0.7 <= policy.delay_for(0) <= 1.3

    def test_retry_after_respected(self):
        response = _status_error(429, {"Retry-After": "7"}).response
        assert RetryPolicy().delay_for(0, response) == 7.0

    def test_retry_after_capped(self):
        response = _status_error(429, {"Retry-After": "600"}).response
        assert RetryPolicy(max_delay=60.0).delay_for(0, response) == 60.0

    def test_bad_retry_after_falls_back(self):
        response = _status_error(429, {"Retry-After": "soon"}).response
        assert NO_JITTER.delay_for(0, response) == 1.0
