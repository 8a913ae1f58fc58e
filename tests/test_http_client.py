"""HttpClient 테스트
Feature: polymarket-market-data
Property: 재시도 백오프 단조 증가 및 상한
REST 재시도 분류, 레이트리밋 토큰 획득, 에러 정보 보존 검증
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from hypothesis import given, strategies as st, settings

from pmdata.config import Config
from pmdata.errors import (
    HttpError, NetworkError, ParseError, RequestTimeoutError, is_no_orderbook_error,
)
from pmdata.http_client import HttpClient
from pmdata.models import FetchRequest
from pmdata.rate_limiter import RateLimitTable

BOOK_URL = "https://clob.polymarket.com/book"


def make_response(status: int, body) -> MagicMock:
    text = body if isinstance(body, str) else json.dumps(body)
    resp = MagicMock()
    resp.status = status
    resp.reason = "OK" if status < 400 else "Error"
    resp.text = AsyncMock(return_value=text)
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


def make_client(*responses, limiter=None, rate_limits=None):
    session = MagicMock()
    session.request = MagicMock(side_effect=list(responses))
    sleeps: list[float] = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    if limiter is None:
        limiter = MagicMock()
        limiter.acquire = AsyncMock(return_value=0.0)
    client = HttpClient(limiter=limiter, rate_limits=rate_limits,
                        session=session, sleep=fake_sleep)
    return client, session, sleeps


# ── Property: 백오프 ──

class TestBackoff:

    @given(attempt=st.integers(min_value=1, max_value=200))
    @settings(max_examples=200)
    def test_backoff_bounds(self, attempt):
        """base*2^(n-1) <= delay <= base*2^(n-1)+0.1, 항상 cap 이하"""
        delay = HttpClient.compute_backoff(attempt)
        exp = 0.2 * 2 ** min(attempt - 1, 64)
        assert delay <= 30.0
        if exp + 0.1 <= 30.0:
            assert exp <= delay <= exp + 0.1
        else:
            assert delay >= min(exp, 30.0)

    @given(attempt=st.integers(min_value=1, max_value=50))
    @settings(max_examples=100)
    def test_backoff_monotonic_without_jitter(self, attempt):
        a = HttpClient.compute_backoff(attempt, jitter=0.0)
        b = HttpClient.compute_backoff(attempt + 1, jitter=0.0)
        assert a <= b <= 30.0


# ── 재시도 ──

class TestRetry:

    def test_server_errors_then_success(self):
        """500, 500, 200 → 성공, 대기 ~0.2s / ~0.4s"""
        client, session, sleeps = make_client(
            make_response(500, {"error": "boom"}),
            make_response(500, {"error": "boom"}),
            make_response(200, {"bids": [], "asks": []}),
        )
        result = asyncio.run(client.get_json(BOOK_URL, params={"token_id": "1"}))
        assert result == {"bids": [], "asks": []}
        assert session.request.call_count == 3
        assert len(sleeps) == 2
        assert 0.2 <= sleeps[0] <= 0.3
        assert 0.4 <= sleeps[1] <= 0.5

    def test_not_found_is_not_retried(self):
        client, session, sleeps = make_client(
            make_response(404, {"error": "No orderbook exists for the requested token id"}),
        )
        with pytest.raises(HttpError) as exc_info:
            asyncio.run(client.get_json(BOOK_URL))
        err = exc_info.value
        assert err.status == 404
        assert err.attempts == 1
        assert not err.retryable
        assert is_no_orderbook_error(err)
        assert session.request.call_count == 1
        assert sleeps == []

    def test_rate_limited_is_retried(self):
        client, session, sleeps = make_client(
            make_response(429, "Too Many Requests"),
            make_response(200, {"price": "0.5"}),
        )
        assert asyncio.run(client.get_json(BOOK_URL)) == {"price": "0.5"}
        assert session.request.call_count == 2

    def test_exhausted_retries_keep_last_status(self):
        client, session, sleeps = make_client(
            make_response(503, ""), make_response(502, ""), make_response(500, {"message": "down"}),
        )
        with pytest.raises(HttpError) as exc_info:
            asyncio.run(client.get_json(BOOK_URL, max_retries=2))
        err = exc_info.value
        assert err.attempts == 3
        assert err.last_status == 500
        assert "down" in str(err)

    def test_network_error_exhausts_with_cause(self):
        cause = aiohttp.ClientConnectionError("connection reset")
        client, session, sleeps = make_client(cause, cause, cause)
        with pytest.raises(NetworkError) as exc_info:
            asyncio.run(client.get_json(BOOK_URL))
        err = exc_info.value
        assert err.attempts == 3
        assert err.__cause__ is cause
        assert len(sleeps) == 2

    def test_timeout_is_retried(self):
        client, session, sleeps = make_client(
            asyncio.TimeoutError(), make_response(200, [1, 2]),
        )
        assert asyncio.run(client.get_json(BOOK_URL, timeout=0.5)) == [1, 2]
        _, kwargs = session.request.call_args
        assert kwargs["timeout"].total == 0.5

    def test_timeout_error_type(self):
        client, _, _ = make_client(asyncio.TimeoutError())
        with pytest.raises(RequestTimeoutError):
            asyncio.run(client.get_json(BOOK_URL, max_retries=0))

    def test_invalid_json_is_not_retried(self):
        client, session, sleeps = make_client(make_response(200, "<html>oops</html>"))
        with pytest.raises(ParseError) as exc_info:
            asyncio.run(client.get_json(BOOK_URL))
        assert exc_info.value.attempts == 1
        assert session.request.call_count == 1

    def test_undecodable_body_is_parse_error(self):
        """UTF-8 로 디코딩할 수 없는 본문 → ParseError, 재시도 없음"""
        resp = make_response(200, "")
        resp.text = AsyncMock(side_effect=UnicodeDecodeError("utf-8", b"\xff\xfe", 0, 1, "invalid start byte"))
        client, session, sleeps = make_client(resp)
        with pytest.raises(ParseError) as exc_info:
            asyncio.run(client.get_json(BOOK_URL))
        err = exc_info.value
        assert err.url == BOOK_URL
        assert err.attempts == 1
        assert err.last_status == 200
        assert isinstance(err.__cause__, UnicodeDecodeError)
        assert session.request.call_count == 1
        assert sleeps == []

    def test_undecodable_error_body_keeps_status(self):
        resp = make_response(503, "")
        resp.text = AsyncMock(side_effect=UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"))
        client, session, _ = make_client(resp, make_response(200, {"ok": True}))
        assert asyncio.run(client.get_json(BOOK_URL, max_retries=1)) == {"ok": True}
        assert session.request.call_count == 2

    def test_empty_body_is_none(self):
        client, _, _ = make_client(make_response(200, ""))
        assert asyncio.run(client.get_json(BOOK_URL)) is None


# ── 레이트리밋 연동 ──

class TestRateLimitIntegration:

    def test_token_acquired_before_every_attempt(self):
        limiter = MagicMock()
        limiter.acquire = AsyncMock(return_value=0.0)
        table = RateLimitTable.from_config(Config())
        client, session, _ = make_client(
            make_response(500, ""), make_response(200, {}),
            limiter=limiter, rate_limits=table,
        )
        asyncio.run(client.get_json(BOOK_URL))
        assert limiter.acquire.await_count == 2
        rule = limiter.acquire.await_args.args[0]
        assert rule.key == "clob.polymarket.com/book"

    def test_fetch_request_fields_forwarded(self):
        client, session, _ = make_client(make_response(200, {"ok": True}))
        request = FetchRequest(
            url="https://gamma-api.polymarket.com/markets",
            method="POST", params={"limit": 1}, body={"q": 1},
            headers={"X-Test": "1"}, timeout=3.0, max_retries=0,
        )
        assert asyncio.run(client.fetch_json(request)) == {"ok": True}
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://gamma-api.polymarket.com/markets")
        assert kwargs["params"] == {"limit": 1}
        assert kwargs["json"] == {"q": 1}
        assert kwargs["headers"] == {"X-Test": "1"}


# ── 세션 관리 ──

class TestSession:

    def test_injected_session_not_closed(self):
        session = MagicMock()
        session.close = AsyncMock()
        client = HttpClient(session=session)
        asyncio.run(client.close())
        session.close.assert_not_awaited()

    def test_context_manager_closes_owned_session(self):
        async def run():
            async with HttpClient() as client:
                session = await client._get_session()
                assert not session.closed
            return session

        session = asyncio.run(run())
        assert session.closed
